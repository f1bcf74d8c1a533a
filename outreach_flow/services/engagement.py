import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from outreach_flow.models.execution import StageExecutionRecord
from outreach_flow.services.conditions import metric_value

logger = logging.getLogger(__name__)


@dataclass
class EngagementSnapshot:
    total: int = 0
    per_contact: Dict[str, int] = field(default_factory=dict)


class EngagementSource(Protocol):
    async def snapshot(self, source_record: Optional[StageExecutionRecord], check_param: str) -> EngagementSnapshot: ...


class DispatchEngagementSource:
    """Measures engagement from the source stage's dispatch records (opens/clicks written by tracking)."""

    def __init__(self, repository):
        self.repository = repository

    async def snapshot(self, source_record: Optional[StageExecutionRecord], check_param: str) -> EngagementSnapshot:
        if source_record is None:
            return EngagementSnapshot()
        dispatches = await self.repository.list_dispatches(source_record.record_id)
        per_contact = {d.contact_id: metric_value(check_param, d) for d in dispatches}
        total = sum(per_contact.values())
        logger.info(
            f"[ENGAGEMENT] {check_param} for record {source_record.record_id}: "
            f"total={total} over {len(per_contact)} dispatches"
        )
        return EngagementSnapshot(total=total, per_contact=per_contact)
