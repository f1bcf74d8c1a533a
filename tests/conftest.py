"""
Shared fixtures.

Everything runs in memory: repository, counter store, queue, alert sink and
send providers are test doubles, and time is a controllable clock.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from outreach_flow.db.memory import InMemoryRepository
from outreach_flow.models.execution import Contact, Execution
from outreach_flow.models.flow import FlowDefinition
from outreach_flow.services.counters import InMemoryCounterStore
from outreach_flow.services.dispatch_guard import ChannelLimits, DispatchGuard
from outreach_flow.services.flow_executor import FlowExecutor
from outreach_flow.services.providers import ProviderRegistry, SendResult
from outreach_flow.services.stuck_recovery import StuckRecovery


# =============================================================================
# TEST DOUBLES
# =============================================================================


class FakeClock:
    """Wall clock for the engine and monotonic clock for the counter store, moved together."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        self._origin = self.now

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - self._origin).total_seconds()

    def advance(self, **delta):
        self.now += timedelta(**delta)


class RecordingQueue:
    def __init__(self, depth: Optional[int] = 0):
        self.depth = depth
        self.condition_checks: List[tuple] = []
        self.dispatches: List[tuple] = []

    def enqueue_condition_check(self, payload: dict, delay_seconds: float = 0) -> None:
        self.condition_checks.append((payload, delay_seconds))

    def enqueue_dispatch(self, dispatch_id: str, attempt: int, delay_seconds: float) -> None:
        self.dispatches.append((dispatch_id, attempt, delay_seconds))

    async def dispatch_queue_depth(self) -> Optional[int]:
        return self.depth


class RecordingAlertSink:
    def __init__(self):
        self.events: List[tuple] = []

    def emit(self, event: str, **details) -> None:
        self.events.append((event, details))

    def names(self) -> List[str]:
        return [event for event, _ in self.events]


class ScriptedProvider:
    """Returns scripted results in order, then successes with increasing message ids."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.sent: List[dict] = []
        self._next_id = 1000

    async def send(self, recipient, content, metadata) -> SendResult:
        self.sent.append({"recipient": recipient, "content": content, "metadata": metadata})
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        self._next_id += 1
        return SendResult(message_id=self._next_id)


# =============================================================================
# GRAPH FACTORIES
# =============================================================================


def scenario_graph(stage_2_edges: bool = False) -> dict:
    """stage-1 (email, no wait) -> conditional-1 (Views > 0) -yes-> stage-2."""
    branches = [
        {"source_node_id": "stage-1", "target_node_id": "conditional-1"},
        {"source_node_id": "conditional-1", "target_node_id": "stage-2", "source_handle": "yes"},
    ]
    if stage_2_edges:
        branches.append({"source_node_id": "stage-2", "target_node_id": "end-1"})
    return {
        "stages": [
            {"id": "stage-1", "type": "stage", "waitDays": 0, "messageType": "email", "subject": "Hi", "inlineContent": "Hello"},
            {"id": "stage-2", "type": "stage", "waitDays": 2, "messageType": "email", "subject": "Again", "inlineContent": "Hello again"},
        ],
        "conditions": [
            {"id": "conditional-1", "type": "condition", "checkParam": "Views", "checkOperator": ">", "checkValue": "0", "evaluationDelay": 24},
        ],
        "branches": branches,
    }


@pytest.fixture
def graph_factory():
    return scenario_graph


# =============================================================================
# ENGINE FIXTURES
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def counter_store(clock):
    return InMemoryCounterStore(clock=clock.monotonic)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def alerts():
    return RecordingAlertSink()


@pytest.fixture
def email_provider():
    return ScriptedProvider()


@pytest.fixture
def sms_provider():
    return ScriptedProvider()


@pytest.fixture
def guard(counter_store, alerts):
    limits = {
        "email": ChannelLimits(per_second=100, per_minute=1000, backoff=5),
        "sms": ChannelLimits(per_second=100, per_minute=1000, backoff=10),
    }
    return DispatchGuard(counter_store, limits, failure_threshold=3, failure_window=60, recovery_time=60, alerts=alerts)


@pytest.fixture
def executor(repository, guard, email_provider, sms_provider, queue, clock):
    providers = ProviderRegistry({"email": email_provider, "sms": sms_provider})
    return FlowExecutor(repository, guard, providers, queue, max_deferrals=3, clock=clock)


@pytest.fixture
def recovery(repository, executor, queue, alerts, clock):
    return StuckRecovery(
        repository, executor, queue, alerts=alerts, inactivity_minutes=30, queue_depth_threshold=10, clock=clock
    )


@pytest.fixture
def seed(repository, clock):
    """Store a flow, its contacts and an in-progress execution due now."""

    async def _seed(graph, contact_ids=("c1",), node_id="stage-1", flow_id="flow-1", execution_id="exec-1"):
        await repository.save_flow(FlowDefinition(flow_id=flow_id, graph=graph))
        for contact_id in contact_ids:
            await repository.save_contact(
                Contact(contact_id=contact_id, email=f"{contact_id}@example.com", phone="+15550100")
            )
        execution = Execution(
            execution_id=execution_id,
            flow_id=flow_id,
            contact_ids=list(contact_ids),
            state="in_progress",
            next_node_id=node_id,
            next_node_scheduled_at=clock(),
        )
        await repository.save_execution(execution)
        return execution

    return _seed
