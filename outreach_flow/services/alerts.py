import logging
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    def emit(self, event: str, **details) -> None: ...


class LogAlertSink:
    """Alerts as warning log lines."""

    def emit(self, event: str, **details) -> None:
        logger.warning(f"[ALERT] {event}: {details}")


class WebhookAlertSink(LogAlertSink):
    """
    Logs the alert and hands webhook delivery to a Celery task.
    Fire-and-forget: enqueue failures are logged, never raised.
    """

    def __init__(self, webhook_url: str):
        self.webhook_url = webhook_url

    def emit(self, event: str, **details) -> None:
        super().emit(event, **details)
        if not self.webhook_url:
            return
        payload = {**details, "emitted_at": datetime.now(timezone.utc).isoformat()}
        try:
            from outreach_flow.tasks import send_alert_task

            send_alert_task.delay(event, payload)
        except Exception as e:
            logger.error(f"[ALERT] Failed to enqueue webhook alert {event}: {e}", exc_info=True)
