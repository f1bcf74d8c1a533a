import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from celery.exceptions import SoftTimeLimitExceeded

from outreach_flow.celery_config import celery_app
from outreach_flow.config import settings
from outreach_flow.db.init import init_db
from outreach_flow.wiring import build_engine

logger = logging.getLogger(__name__)


@celery_app.task(
    name="outreach_flow.tasks.run_scheduled_nodes_task",
    acks_late=False,
    max_retries=0,
    time_limit=settings.SWEEP_TIMEOUT_SECONDS,
    soft_time_limit=max(1, settings.SWEEP_TIMEOUT_SECONDS - 5),
)
def run_scheduled_nodes_task():
    """
    The sweep: advance every in-progress execution whose next node is due.
    Never retried and not late-acked, a stalled sweep fails instead of running twice.
    """

    async def sweep():
        await init_db()
        async with build_engine() as engine:
            report = await engine.executor.run_sweep()
        return report.as_dict()

    try:
        logger.info(f"=== RUN_SCHEDULED_NODES_TASK STARTED === {datetime.now(timezone.utc).isoformat()}")
        result = asyncio.run(sweep())
        logger.info(f"=== RUN_SCHEDULED_NODES_TASK COMPLETED === {result}")
        return result
    except SoftTimeLimitExceeded:
        logger.error(f"=== RUN_SCHEDULED_NODES_TASK TIMED OUT === after {settings.SWEEP_TIMEOUT_SECONDS}s")
        raise
    except Exception as e:
        logger.error(f"=== RUN_SCHEDULED_NODES_TASK FAILED ===")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="outreach_flow.tasks.start_execution_task", acks_late=True, max_retries=0)
def start_execution_task(execution_id: str):
    """Move a pending execution onto its entry node."""

    async def start():
        await init_db()
        async with build_engine() as engine:
            execution = await engine.executor.start_execution(execution_id)
        if execution is None:
            return None
        return {
            "execution_id": execution.execution_id,
            "state": execution.state,
            "next_node_id": execution.next_node_id,
        }

    try:
        logger.info(f"=== START_EXECUTION_TASK STARTED === {execution_id}")
        result = asyncio.run(start())
        logger.info(f"=== START_EXECUTION_TASK COMPLETED === {result}")
        return result
    except Exception as e:
        logger.error(f"=== START_EXECUTION_TASK FAILED ===")
        logger.error(f"Execution ID: {execution_id}")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="outreach_flow.tasks.verify_condition_task", bind=True, acks_late=True, max_retries=3)
def verify_condition_task(self, payload: dict):
    """Evaluate a condition node and re-enter the walk at the resolved branch."""

    async def verify():
        await init_db()
        async with build_engine() as engine:
            return await engine.executor.verify_condition(payload)

    try:
        logger.info(f"=== VERIFY_CONDITION_TASK STARTED ===")
        logger.info(f"Execution ID: {payload.get('execution_id')}")
        logger.info(f"Node ID: {payload.get('node_id')}")
        result = asyncio.run(verify())
        logger.info(f"=== VERIFY_CONDITION_TASK COMPLETED === result={result}")
        return result
    except Exception as e:
        logger.error(f"=== VERIFY_CONDITION_TASK FAILED ===")
        logger.error(f"Record ID: {payload.get('record_id')}")
        logger.error(f"Error: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=settings.SWEEP_INTERVAL_SECONDS)


@celery_app.task(name="outreach_flow.tasks.dispatch_contact_task", bind=True, acks_late=True, max_retries=3)
def dispatch_contact_task(self, dispatch_id: str, attempt: int):
    """A contact send the dispatch guard deferred earlier."""

    async def dispatch():
        await init_db()
        async with build_engine() as engine:
            return await engine.executor.dispatch_deferred(dispatch_id, attempt)

    try:
        logger.info(f"[DISPATCH_TASK] Dispatch {dispatch_id}, attempt {attempt}")
        return asyncio.run(dispatch())
    except Exception as e:
        logger.error(f"[DISPATCH_TASK] Dispatch {dispatch_id} failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=settings.SWEEP_INTERVAL_SECONDS)


@celery_app.task(name="outreach_flow.tasks.recover_stuck_stages_task", acks_late=True, max_retries=0)
def recover_stuck_stages_task(inactivity_minutes: Optional[int] = None, dry_run: bool = False):
    """Force-complete stages abandoned mid-dispatch and move their executions on."""

    async def recover():
        await init_db()
        async with build_engine() as engine:
            reports = await engine.recovery.recover(inactivity_minutes=inactivity_minutes, dry_run=dry_run)
        return [report.as_dict() for report in reports]

    try:
        return asyncio.run(recover())
    except Exception as e:
        logger.error(f"Error in recover_stuck_stages_task: {e}", exc_info=True)
        raise


@celery_app.task(name="outreach_flow.tasks.send_alert_task", bind=True, max_retries=3)
def send_alert_task(self, event: str, details: dict):
    """POST an alert to the configured webhook."""
    if not settings.ALERT_WEBHOOK_URL:
        logger.info(f"[ALERT] No webhook configured, dropping {event}")
        return False
    try:
        response = httpx.post(
            settings.ALERT_WEBHOOK_URL,
            json={"event": event, "service": settings.APP_NAME, "details": details},
            timeout=10.0,
        )
        response.raise_for_status()
        logger.info(f"[ALERT] Delivered {event} to webhook ({response.status_code})")
        return True
    except httpx.HTTPError as e:
        logger.warning(f"[ALERT] Webhook delivery of {event} failed: {e}")
        raise self.retry(exc=e, countdown=30)
