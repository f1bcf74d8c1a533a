import asyncio
import logging
import random
import re
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, List, Optional, Protocol
from urllib.parse import quote

from itsdangerous import URLSafeTimedSerializer

from outreach_flow.errors import DispatchError

logger = logging.getLogger(__name__)

LINK_PATTERN = re.compile(r'href=["\']([^"\']+)["\']')


@dataclass
class SendResult:
    """What a provider reports for one send. `error=True` counts as a dispatch failure."""

    error: bool = False
    message_id: Optional[int] = None
    response: dict = field(default_factory=dict)
    error_message: Optional[str] = None


@dataclass
class MessageContent:
    body: str = ""
    subject: Optional[str] = None
    template_ref: Optional[str] = None


class SendProvider(Protocol):
    async def send(self, recipient: str, content: MessageContent, metadata: dict) -> SendResult: ...


def _new_message_id(rng=random) -> int:
    return rng.randint(100_000, 999_999_999)


class FakeSendProvider:
    """Accepts every send (or fails at `failure_rate`) and remembers what it was asked to send."""

    def __init__(self, channel: str = "email", failure_rate: float = 0.0, rng: Optional[random.Random] = None):
        self.channel = channel
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()
        self.sent: List[dict] = []

    async def send(self, recipient: str, content: MessageContent, metadata: dict) -> SendResult:
        self.sent.append({"recipient": recipient, "content": content, "metadata": metadata})
        if self.failure_rate and self.rng.random() < self.failure_rate:
            logger.info(f"[FAKE_{self.channel.upper()}] Simulated failure for {recipient}")
            return SendResult(error=True, error_message="simulated provider failure")
        message_id = _new_message_id(self.rng)
        logger.info(f"[FAKE_{self.channel.upper()}] Sent to {recipient}, message id {message_id}")
        return SendResult(message_id=message_id, response={"provider": f"fake-{self.channel}"})


class SmtpEmailProvider:
    """
    HTML email over SMTP with STARTTLS.
    Adds a signed open-tracking pixel and rewrites links into signed click-tracking URLs.
    The blocking SMTP exchange runs in a worker thread.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        sender_name: str,
        tracking_secret: str,
        public_url: str,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender_name = sender_name
        self.public_url = public_url.rstrip("/")
        self.serializer = URLSafeTimedSerializer(tracking_secret)

    @classmethod
    def from_settings(cls, settings) -> "SmtpEmailProvider":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            sender_name=settings.SMTP_SENDER_NAME,
            tracking_secret=settings.TRACKING_SECRET_KEY,
            public_url=settings.API_PUBLIC_URL,
        )

    def tracking_url(self, endpoint: str, token: str, **params) -> str:
        query = "".join(f"&{k}={quote(str(v), safe='')}" for k, v in params.items())
        return f"{self.public_url}{endpoint}?token={token}{query}"

    def tracking_tokens(self, metadata: dict) -> Dict[str, str]:
        base = {"dispatch_id": metadata.get("dispatch_id"), "execution_id": metadata.get("execution_id")}
        return {
            "open": self.serializer.dumps({**base, "type": "open"}),
            "click": self.serializer.dumps({**base, "type": "click"}),
        }

    def render_html(self, content: MessageContent, tokens: Dict[str, str]) -> str:
        body = (content.body or "").replace("\n", "<br>")

        def replace_link(match):
            original_url = match.group(1)
            if "/api/track/" in original_url or not original_url.strip():
                return match.group(0)
            return f'href="{self.tracking_url("/api/track/click", tokens["click"], url=original_url)}"'

        tracked_body = LINK_PATTERN.sub(replace_link, body)
        pixel_url = self.tracking_url("/api/track/open", tokens["open"])
        return (
            "<!DOCTYPE html><html><head><meta charset=\"UTF-8\">"
            f"<title>{content.subject or ''}</title></head><body>"
            f"<div class=\"content\">{tracked_body}</div>"
            f"<img src=\"{pixel_url}\" width=\"1\" height=\"1\" alt=\"\" style=\"display:none\">"
            "</body></html>"
        )

    def build_message(self, recipient: str, content: MessageContent, metadata: dict) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = content.subject or ""
        msg["From"] = f"{self.sender_name} <{self.username}>"
        msg["To"] = recipient
        msg["Reply-To"] = self.username
        msg["List-Unsubscribe"] = f"<mailto:{self.username}?subject=unsubscribe>"
        msg["Precedence"] = "bulk"
        msg.attach(MIMEText(self.render_html(content, self.tracking_tokens(metadata)), "html"))
        return msg

    def _deliver(self, msg: MIMEMultipart):
        logger.debug(f"[EMAIL] Connecting to {self.host}:{self.port}")
        with smtplib.SMTP(self.host, self.port) as server:
            server.starttls()
            server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, recipient: str, content: MessageContent, metadata: dict) -> SendResult:
        if not recipient or not recipient.strip():
            raise ValueError("Recipient email is required")

        if not self.username or not self.password:
            logger.error(f"[EMAIL] Missing SMTP credentials, cannot send to {recipient}")
            return SendResult(error=True, error_message="Missing SMTP credentials")

        message_id = _new_message_id()
        msg = self.build_message(recipient, content, metadata)
        msg["X-Outreach-Message-Id"] = str(message_id)

        try:
            await asyncio.to_thread(self._deliver, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"[EMAIL] SMTP authentication failed: {e}")
            return SendResult(error=True, error_message=f"SMTP authentication failed: {e}")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"[EMAIL] Failed to send to {recipient}: {e}")
            return SendResult(error=True, error_message=str(e))

        logger.info(f"[EMAIL] Sent to {recipient}, message id {message_id}")
        return SendResult(message_id=message_id, response={"provider": "smtp", "recipient": recipient})


class ProviderRegistry:
    """Routes `send(channel, ...)` to the provider configured for the channel."""

    def __init__(self, providers: Dict[str, SendProvider]):
        self.providers = providers

    @classmethod
    def from_settings(cls, settings) -> "ProviderRegistry":
        if settings.EMAIL_PROVIDER == "smtp":
            email = SmtpEmailProvider.from_settings(settings)
        else:
            email = FakeSendProvider("email")
        if settings.SMS_PROVIDER != "fake":
            logger.warning(f"[PROVIDERS] Unsupported SMS provider {settings.SMS_PROVIDER!r}, using fake")
        return cls({"email": email, "sms": FakeSendProvider("sms")})

    async def send(self, channel: str, recipient: str, content: MessageContent, metadata: dict) -> SendResult:
        provider = self.providers.get(channel)
        if provider is None:
            raise DispatchError(f"No send provider configured for channel {channel}")
        return await provider.send(recipient, content, metadata)
