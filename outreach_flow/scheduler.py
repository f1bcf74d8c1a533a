import logging
from datetime import timedelta

from celery.schedules import crontab

from outreach_flow.celery_config import celery_app
from outreach_flow.config import settings

logger = logging.getLogger(__name__)


def build_beat_schedule(config=settings) -> dict:
    """Periodic triggers: the sweep and stuck recovery, each on its own clock."""
    return {
        "run-scheduled-nodes": {
            "task": "outreach_flow.tasks.run_scheduled_nodes_task",
            "schedule": timedelta(seconds=config.SWEEP_INTERVAL_SECONDS),
            # a sweep still queued when the next one is due is dropped
            "options": {"expires": config.SWEEP_INTERVAL_SECONDS},
        },
        "recover-stuck-stages": {
            "task": "outreach_flow.tasks.recover_stuck_stages_task",
            "schedule": crontab(minute=f"*/{config.RECOVERY_INTERVAL_MINUTES}"),
        },
    }


celery_app.conf.beat_schedule = build_beat_schedule()
logger.info("Periodic tasks configured successfully")
