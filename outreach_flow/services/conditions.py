"""
Condition evaluation.

`evaluate` is pure and never raises: malformed input and unknown operators
evaluate to False.
"""
import logging
import operator as op
from typing import Iterable, List, Mapping, Set, Tuple, Union

from outreach_flow.models.execution import DispatchRecord

logger = logging.getLogger(__name__)

Expected = Union[str, int, List[int], List[str]]

SCALAR_OPERATORS = {
    ">": op.gt,
    ">=": op.ge,
    "==": op.eq,
    "!=": op.ne,
    "<": op.lt,
    "<=": op.le,
}
SET_OPERATORS = ("in", "not_in")

FLAG_PARAMS = {
    "views": "views",
    "opens": "views",
    "email_opened": "views",
    "clicks": "clicks",
    "email_clicked": "clicks",
    "bounces": "bounced",
    "email_bounced": "bounced",
    "unsubscribes": "unsubscribed",
    "email_unsubscribed": "unsubscribed",
}
COUNT_PARAMS = {
    "total_views": "views",
    "total_opens": "views",
    "total_clicks": "clicks",
}


def _to_int(value) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return int(float(text))


def _parse_set(expected: Expected) -> Set[int]:
    if isinstance(expected, (list, tuple, set)):
        items = list(expected)
    elif isinstance(expected, str):
        items = [part for part in expected.split(",") if part.strip()]
    else:
        items = [expected]
    return {_to_int(item) for item in items}


def evaluate(actual, operator: str, expected: Expected) -> bool:
    """Compare a measured metric against the condition's expected value."""
    try:
        actual_value = _to_int(actual)
        if operator in SCALAR_OPERATORS:
            if isinstance(expected, (list, tuple)):
                logger.warning(f"[CONDITION] Operator {operator} got a list value {expected}")
                return False
            return SCALAR_OPERATORS[operator](actual_value, _to_int(expected))
        if operator == "in":
            return actual_value in _parse_set(expected)
        if operator == "not_in":
            return actual_value not in _parse_set(expected)
    except (TypeError, ValueError, OverflowError) as e:
        logger.warning(f"[CONDITION] Could not evaluate {actual!r} {operator} {expected!r}: {e}")
        return False

    logger.warning(f"[CONDITION] Unknown operator {operator!r}, evaluating to False")
    return False


def metric_value(check_param: str, dispatch: DispatchRecord) -> int:
    """Per-contact metric read from a dispatch record. Unknown params read as 0."""
    key = (check_param or "").strip().lower()
    if key in FLAG_PARAMS:
        return 1 if getattr(dispatch, FLAG_PARAMS[key]) else 0
    if key in COUNT_PARAMS:
        return int(getattr(dispatch, COUNT_PARAMS[key]) or 0)
    logger.debug(f"[CONDITION] Unknown check param {check_param!r}, reading 0")
    return 0


def split_by_values(
    contact_ids: Iterable[str], per_contact: Mapping[str, int], operator: str, expected: Expected
) -> Tuple[List[str], List[str]]:
    """
    Split a cohort into (yes, no) by evaluating each contact's own metric.
    Contacts missing from `per_contact` were never reached and go to `no`.
    """
    yes, no = [], []
    for contact_id in contact_ids:
        if contact_id in per_contact and evaluate(per_contact[contact_id], operator, expected):
            yes.append(contact_id)
        else:
            no.append(contact_id)
    return yes, no

