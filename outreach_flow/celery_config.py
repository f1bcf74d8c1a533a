from celery import Celery
from kombu import Queue

from outreach_flow.config import settings
from outreach_flow.services.queue import DISPATCH_QUEUE

celery_app = Celery(
    "outreach_flow_tasks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["outreach_flow.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_eager_propagates=True,
    task_store_errors_even_if_ignored=True,
    # Retry settings
    task_default_retry_delay=60,  # 1 minute
    task_max_retries=3,
    # Deferred contact sends get their own queue so its depth can be measured
    task_default_queue="celery",
    task_queues=(Queue("celery"), Queue(DISPATCH_QUEUE)),
    task_routes={"outreach_flow.tasks.dispatch_contact_task": {"queue": DISPATCH_QUEUE}},
    # Worker settings
    worker_max_tasks_per_child=1000,
    # Result backend settings
    result_expires=3600,  # 1 hour
    # Connection error handling
    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,
    result_backend_transport_options={
        "retry_on_timeout": True,
        "max_retries": 3,
    },
)
