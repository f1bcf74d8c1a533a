"""
Builds the engine from settings.

Celery tasks run each unit of work in a fresh event loop, so the Redis
client is created per engine and closed with it.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from outreach_flow.config import Settings, get_settings
from outreach_flow.db.repository import BeanieRepository
from outreach_flow.services.alerts import AlertSink, WebhookAlertSink
from outreach_flow.services.counters import InMemoryCounterStore, RedisCounterStore
from outreach_flow.services.dispatch_guard import DispatchGuard
from outreach_flow.services.flow_executor import FlowExecutor
from outreach_flow.services.providers import ProviderRegistry
from outreach_flow.services.queue import CeleryTaskQueue
from outreach_flow.services.stuck_recovery import StuckRecovery

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    repository: BeanieRepository
    guard: DispatchGuard
    executor: FlowExecutor
    recovery: StuckRecovery


def build_counter_store(settings: Settings):
    if settings.COUNTER_BACKEND == "memory":
        logger.warning("[WIRING] Using in-memory counter store, limits are per process")
        return InMemoryCounterStore()
    return RedisCounterStore.from_url(settings.REDIS_URL)


def build_alert_sink(settings: Settings) -> AlertSink:
    return WebhookAlertSink(settings.ALERT_WEBHOOK_URL)


@asynccontextmanager
async def build_engine(settings: Optional[Settings] = None) -> AsyncIterator[Engine]:
    settings = settings or get_settings()
    store = build_counter_store(settings)
    alerts = build_alert_sink(settings)
    repository = BeanieRepository()
    queue = CeleryTaskQueue()
    guard = DispatchGuard.from_settings(store, settings, alerts=alerts)
    executor = FlowExecutor(
        repository,
        guard,
        ProviderRegistry.from_settings(settings),
        queue,
        concurrency=settings.SWEEP_CONCURRENCY,
        max_deferrals=settings.DISPATCH_MAX_DEFERRALS,
        default_evaluation_delay_hours=settings.DEFAULT_EVALUATION_DELAY_HOURS,
    )
    recovery = StuckRecovery(
        repository,
        executor,
        queue,
        alerts=alerts,
        inactivity_minutes=settings.STUCK_INACTIVITY_MINUTES,
        queue_depth_threshold=settings.STUCK_QUEUE_DEPTH_THRESHOLD,
    )
    try:
        yield Engine(repository=repository, guard=guard, executor=executor, recovery=recovery)
    finally:
        await store.close()
