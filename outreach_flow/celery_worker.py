import asyncio
import logging

from celery.signals import worker_process_init

from outreach_flow.celery_config import celery_app
from outreach_flow.config import settings
from outreach_flow.db.init import init_db
import outreach_flow.scheduler  # noqa: F401  registers the beat schedule

# Entry point for the worker and beat:
#   celery -A outreach_flow.celery_worker.celery worker -Q celery,dispatch
#   celery -A outreach_flow.celery_worker.celery beat

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@worker_process_init.connect
def on_worker_init(**kwargs):
    """
    Check the database when a worker process starts.
    Tasks initialize Beanie again inside their own event loop.
    """
    logger.info("Celery worker process initializing...")
    try:
        asyncio.run(init_db())
        logger.info("Database connection verified for Celery worker.")
    except Exception as e:
        logger.error(f"Failed to initialize database for Celery worker: {e}", exc_info=True)
        raise


celery = celery_app
