from datetime import datetime, timezone
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FlowDefinition(BaseModel):
    """A versioned flow. The graph JSON is stored as received from the builder."""

    flow_id: str = Field(..., examples=["flow_1754062199795"])
    name: str = Field(default="Outreach Flow", examples=["Welcome Sequence"])
    version: int = 1
    graph: Optional[Any] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class _GraphNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    type: Optional[str] = None


class StageNode(_GraphNode):
    """Send action: one email or SMS broadcast to the cohort."""

    kind: Literal["stage"] = "stage"
    wait_days: float = Field(default=0, alias="waitDays")
    message_type: Literal["email", "sms"] = Field(default="email", alias="messageType")
    template_ref: Optional[str] = Field(default=None, alias="templateRef")
    subject: Optional[str] = None
    content: Optional[str] = Field(default=None, alias="inlineContent")

    @field_validator("wait_days", mode="before")
    @classmethod
    def _none_wait_is_zero(cls, value):
        return 0 if value in (None, "") else value

    @field_validator("message_type", mode="before")
    @classmethod
    def _normalize_message_type(cls, value):
        if value in (None, ""):
            return "email"
        return str(value).lower()


class ConditionNode(_GraphNode):
    """Branches on an engagement metric measured after a delay."""

    kind: Literal["condition"] = "condition"
    check_param: str = Field(default="Views", alias="checkParam")
    check_operator: str = Field(default=">", alias="checkOperator")
    check_value: Union[List[int], int, str] = Field(default="0", alias="checkValue")
    evaluation_delay_hours: Optional[float] = Field(default=None, alias="evaluationDelay")


class EndNode(_GraphNode):
    kind: Literal["end"] = "end"


FlowNode = Union[StageNode, ConditionNode, EndNode]


class Edge(BaseModel):
    """Canonical directed edge, the only shape traversal code sees."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    handle: Optional[str] = None

    def matches_branch(self, branch: str) -> bool:
        if not self.handle:
            return False
        return self.handle == branch or self.handle.endswith(f"-{branch}")


class CanonicalBranch(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source_node_id: str = Field(alias="sourceNodeId")
    target_node_id: str = Field(alias="targetNodeId")
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")

    def to_edge(self) -> Edge:
        return Edge(source=self.source_node_id, target=self.target_node_id, handle=self.source_handle)


class LegacyEdge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source: Optional[str] = None
    target: Optional[str] = None
    sourceHandle: Optional[str] = None

    def to_edge(self) -> Optional[Edge]:
        if not self.source or not self.target:
            return None
        return Edge(source=self.source, target=self.target, handle=self.sourceHandle)
