"""
Error taxonomy of the flow engine.

GraphError      - fatal to one execution, never retried.
DispatchError   - a provider send failed; recorded, the walk still advances.
ThrottledError  - the dispatch guard refused to send now; re-queue with retry_after.
"""
from typing import Optional


class FlowEngineError(Exception):
    """Base class for every engine error."""


class GraphError(FlowEngineError):
    """The flow graph is missing, empty, unparseable or inconsistent."""


class NodeNotFoundError(GraphError):
    def __init__(self, node_id: Optional[str]):
        self.node_id = node_id
        super().__init__(f"Node {node_id} not found in flow graph")


class DispatchError(FlowEngineError):
    """A send through a provider failed."""


class DispatchRetriesExhaustedError(DispatchError):
    def __init__(self, dispatch_id: str, attempts: int):
        self.dispatch_id = dispatch_id
        self.attempts = attempts
        super().__init__(f"Dispatch {dispatch_id} deferred {attempts} times, retries exhausted")


class ThrottledError(FlowEngineError):
    """Raised by the dispatch guard instead of invoking the send."""

    reason = "throttled"

    def __init__(self, channel: str, retry_after: float, message: Optional[str] = None):
        self.channel = channel
        self.retry_after = retry_after
        super().__init__(message or f"{self.reason} on channel {channel}, retry in {retry_after}s")


class RateLimitedError(ThrottledError):
    reason = "rate_limited"


class CircuitOpenError(ThrottledError):
    reason = "circuit_open"
