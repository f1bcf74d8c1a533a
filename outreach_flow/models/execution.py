import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ExecutionState = Literal["pending", "in_progress", "completed", "failed"]
NodeRecordState = Literal["pending", "executing", "completed", "failed"]
DispatchState = Literal["pending", "sent", "failed"]

TERMINAL_EXECUTION_STATES = ("completed", "failed")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class Execution(BaseModel):
    """One run of a flow for a cohort of contacts."""

    execution_id: str = Field(default_factory=lambda: _new_id("exec"))
    flow_id: str = Field(..., examples=["flow_1754062199795"])
    contact_ids: List[str] = Field(default_factory=list)
    state: ExecutionState = "pending"
    current_node_id: Optional[str] = None
    next_node_id: Optional[str] = Field(default=None, examples=["stage-1"])
    next_node_scheduled_at: Optional[datetime] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_EXECUTION_STATES


class StageExecutionRecord(BaseModel):
    """Per-node record of an execution. At most one per (execution, node)."""

    record_id: str = Field(default_factory=lambda: _new_id("rec"))
    execution_id: str
    node_id: str
    node_type: Literal["stage", "condition", "end"] = "stage"
    state: NodeRecordState = "pending"
    executed: bool = False
    # Branch population handed over by a condition; None means the whole cohort.
    contact_ids: Optional[List[str]] = None
    provider_message_id: Optional[int] = None
    provider_response: dict = Field(default_factory=dict)
    error_message: Optional[str] = None
    source_record_id: Optional[str] = None
    source_message_id: Optional[int] = None
    synthetic: bool = False
    scheduled_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in ("completed", "failed")


class ConditionExecutionRecord(BaseModel):
    execution_id: str
    record_id: str
    node_id: str
    state: Literal["completed", "failed"] = "completed"
    check_param: str
    check_operator: str
    check_value: str
    source_message_id: Optional[int] = None
    actual_value: Optional[int] = None
    result: bool = False
    branch_yes: List[str] = Field(default_factory=list)
    branch_no: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    evaluated_at: datetime = Field(default_factory=utc_now)


class DispatchRecord(BaseModel):
    """A single contact send belonging to a stage record."""

    dispatch_id: str = Field(default_factory=lambda: _new_id("disp"))
    execution_id: str
    record_id: str
    node_id: str
    contact_id: str
    channel: Literal["email", "sms"] = "email"
    recipient: Optional[str] = None
    state: DispatchState = "pending"
    attempts: int = 0
    provider_message_id: Optional[int] = None
    error_message: Optional[str] = None
    # Engagement counters, written by the tracking side.
    views: int = 0
    clicks: int = 0
    bounced: bool = False
    unsubscribed: bool = False
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


class Contact(BaseModel):
    contact_id: str
    name: str = Field(default="Valued Customer", examples=["John Doe"])
    email: Optional[str] = Field(default=None, examples=["john@example.com"])
    phone: Optional[str] = None

    def address_for(self, channel: str) -> Optional[str]:
        value = self.email if channel == "email" else self.phone
        if value and value.strip():
            return value.strip()
        return None


class JournalEntry(BaseModel):
    """
    A single state transition in an execution's walk.
    Used for auditing and debugging flows.
    """

    execution_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    message: str
    node_id: Optional[str] = None
    node_type: Optional[str] = None
    details: Optional[dict] = None
