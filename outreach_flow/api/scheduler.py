import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from outreach_flow.config import Settings, get_settings
from outreach_flow.tasks import recover_stuck_stages_task, run_scheduled_nodes_task, start_execution_task

logger = logging.getLogger(__name__)
router = APIRouter()


def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(default=None),
    config: Settings = Depends(get_settings),
):
    """
    Trigger endpoints are called by an external cron.
    Without a configured secret they are open outside production only.
    """
    if not config.CRON_SECRET:
        if config.is_production:
            logger.error("[SCHEDULER_API] CRON_SECRET is not configured in production")
            raise HTTPException(status_code=503, detail="Cron secret not configured")
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, config.CRON_SECRET):
        logger.warning("[SCHEDULER_API] Rejected trigger with missing or invalid X-Cron-Secret")
        raise HTTPException(status_code=401, detail="Invalid cron secret")


@router.post("/scheduler/run-nodes", dependencies=[Depends(verify_cron_secret)])
async def trigger_sweep():
    """Queue one sweep of due executions."""
    task = run_scheduled_nodes_task.delay()
    logger.info(f"[SCHEDULER_API] Sweep queued as task {task.id}")
    return {"status": "queued", "task": "run_scheduled_nodes", "task_id": task.id}


@router.post("/scheduler/executions/{execution_id}/start", dependencies=[Depends(verify_cron_secret)])
async def trigger_start(execution_id: str):
    """Queue the start of a pending execution. The sweep takes it from its entry node."""
    task = start_execution_task.delay(execution_id)
    logger.info(f"[SCHEDULER_API] Start of execution {execution_id} queued as task {task.id}")
    return {"status": "queued", "task": "start_execution", "task_id": task.id, "execution_id": execution_id}


@router.post("/scheduler/recover-stuck", dependencies=[Depends(verify_cron_secret)])
async def trigger_recovery(
    minutes: Optional[int] = Query(default=None, ge=1, description="Inactivity window in minutes"),
    dry_run: bool = Query(default=False),
):
    task = recover_stuck_stages_task.delay(minutes, dry_run)
    logger.info(f"[SCHEDULER_API] Stuck recovery queued as task {task.id} (minutes={minutes}, dry_run={dry_run})")
    return {
        "status": "queued",
        "task": "recover_stuck_stages",
        "task_id": task.id,
        "minutes": minutes,
        "dry_run": dry_run,
    }


@router.get("/scheduler/health")
async def scheduler_health(config: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "sweep_interval_seconds": config.SWEEP_INTERVAL_SECONDS,
        "sweep_timeout_seconds": config.SWEEP_TIMEOUT_SECONDS,
        "recovery_interval_minutes": config.RECOVERY_INTERVAL_MINUTES,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
