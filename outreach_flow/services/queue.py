import asyncio
import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

DISPATCH_QUEUE = "dispatch"


class TaskQueue(Protocol):
    def enqueue_condition_check(self, payload: dict, delay_seconds: float = 0) -> None: ...

    def enqueue_dispatch(self, dispatch_id: str, attempt: int, delay_seconds: float) -> None: ...

    async def dispatch_queue_depth(self) -> Optional[int]: ...


class CeleryTaskQueue:
    """Queue collaborator backed by the Celery tasks in `outreach_flow.tasks`."""

    def __init__(self, dispatch_queue: str = DISPATCH_QUEUE):
        self.dispatch_queue = dispatch_queue

    def enqueue_condition_check(self, payload: dict, delay_seconds: float = 0) -> None:
        from outreach_flow.tasks import verify_condition_task

        verify_condition_task.apply_async(args=[payload], countdown=max(0, delay_seconds))
        logger.info(f"[QUEUE] Condition check for record {payload.get('record_id')} queued in {delay_seconds}s")

    def enqueue_dispatch(self, dispatch_id: str, attempt: int, delay_seconds: float) -> None:
        from outreach_flow.tasks import dispatch_contact_task

        dispatch_contact_task.apply_async(
            args=[dispatch_id, attempt], countdown=max(0, delay_seconds), queue=self.dispatch_queue
        )
        logger.info(f"[QUEUE] Dispatch {dispatch_id} re-queued (attempt {attempt}) in {delay_seconds}s")

    def _measure_depth(self) -> int:
        from outreach_flow.celery_config import celery_app

        with celery_app.connection_for_write() as connection:
            declared = connection.default_channel.queue_declare(queue=self.dispatch_queue, passive=True)
            return int(declared.message_count)

    async def dispatch_queue_depth(self) -> Optional[int]:
        """Messages waiting on the dispatch queue, or None when the broker can't tell."""
        try:
            return await asyncio.to_thread(self._measure_depth)
        except Exception as e:
            logger.warning(f"[QUEUE] Could not measure depth of queue {self.dispatch_queue}: {e}")
            return None
