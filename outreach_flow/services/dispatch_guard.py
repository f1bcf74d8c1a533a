"""
Dispatch guard: rate limiter + circuit breaker around every outbound send.

State lives in a shared CounterStore, one independent set of keys per channel:
    dispatch-rate:{channel}:second   sends in the current second   (TTL 1s)
    dispatch-rate:{channel}:minute   sends in the current minute   (TTL 60s)
    dispatch-failures:{channel}      failure tally                 (TTL failure window)
    dispatch-circuit:{channel}       open flag                     (TTL recovery time)

The guard never sleeps. When it refuses to send it raises a ThrottledError
carrying retry_after, and the caller re-queues the work.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from outreach_flow.errors import CircuitOpenError, RateLimitedError
from outreach_flow.services.alerts import AlertSink
from outreach_flow.services.counters import CounterStore

logger = logging.getLogger(__name__)

MAX_BACKOFF_EXPONENT = 5


@dataclass(frozen=True)
class ChannelLimits:
    per_second: int
    per_minute: int
    backoff: int

    def backoff_for(self, attempt: int) -> int:
        return self.backoff * 2 ** min(max(attempt, 0), MAX_BACKOFF_EXPONENT)


def rate_second_key(channel: str) -> str:
    return f"dispatch-rate:{channel}:second"


def rate_minute_key(channel: str) -> str:
    return f"dispatch-rate:{channel}:minute"


def failures_key(channel: str) -> str:
    return f"dispatch-failures:{channel}"


def circuit_key(channel: str) -> str:
    return f"dispatch-circuit:{channel}"


class DispatchGuard:
    def __init__(
        self,
        store: CounterStore,
        limits: Dict[str, ChannelLimits],
        failure_threshold: int = 10,
        failure_window: int = 60,
        recovery_time: int = 60,
        alerts: Optional[AlertSink] = None,
    ):
        self.store = store
        self.limits = limits
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.recovery_time = recovery_time
        self.alerts = alerts

    @classmethod
    def from_settings(cls, store: CounterStore, settings, alerts: Optional[AlertSink] = None) -> "DispatchGuard":
        limits = {
            "email": ChannelLimits(
                settings.EMAIL_RATE_PER_SECOND, settings.EMAIL_RATE_PER_MINUTE, settings.EMAIL_RATE_BACKOFF
            ),
            "sms": ChannelLimits(
                settings.SMS_RATE_PER_SECOND, settings.SMS_RATE_PER_MINUTE, settings.SMS_RATE_BACKOFF
            ),
        }
        return cls(
            store,
            limits,
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            failure_window=settings.CIRCUIT_FAILURE_WINDOW,
            recovery_time=settings.CIRCUIT_RECOVERY_TIME,
            alerts=alerts,
        )

    def _limits(self, channel: str) -> ChannelLimits:
        if channel not in self.limits:
            raise ValueError(f"Unknown dispatch channel: {channel}")
        return self.limits[channel]

    async def is_circuit_open(self, channel: str) -> bool:
        return bool(await self.store.get(circuit_key(channel)))

    async def guard(self, channel: str, attempt: int, send: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run `send` if the channel is neither circuit-open nor over its rate caps.

        Raises CircuitOpenError or RateLimitedError without calling `send`.
        Exceptions from `send` propagate after the failure is counted.
        """
        limits = self._limits(channel)

        if await self.is_circuit_open(channel):
            logger.warning(f"[GUARD] Circuit open for {channel}, deferring attempt {attempt} by {self.recovery_time}s")
            raise CircuitOpenError(channel, self.recovery_time)

        per_second = await self.store.get(rate_second_key(channel)) or 0
        per_minute = await self.store.get(rate_minute_key(channel)) or 0
        if per_second >= limits.per_second or per_minute >= limits.per_minute:
            retry_after = limits.backoff_for(attempt)
            logger.info(
                f"[GUARD] Rate limit hit for {channel} ({per_second}/s, {per_minute}/min), "
                f"deferring attempt {attempt} by {retry_after}s"
            )
            raise RateLimitedError(channel, retry_after)

        await self.store.increment(rate_second_key(channel), 1)
        await self.store.increment(rate_minute_key(channel), 60)

        try:
            result = await send()
        except Exception as e:
            await self._record_failure(channel, str(e))
            raise

        if getattr(result, "error", False):
            await self._record_failure(channel, getattr(result, "error_message", None) or "provider reported error")
        else:
            await self._record_success(channel)
        return result

    async def _record_failure(self, channel: str, reason: str):
        tally = await self.store.increment(failures_key(channel), self.failure_window)
        logger.warning(f"[GUARD] Send failure on {channel} ({tally}/{self.failure_threshold}): {reason}")
        if tally < self.failure_threshold:
            return
        if await self.is_circuit_open(channel):
            return
        await self.store.set(circuit_key(channel), 1, self.recovery_time)
        logger.error(f"[GUARD] Circuit OPENED for {channel} after {tally} failures, closing in {self.recovery_time}s")
        if self.alerts is not None:
            self.alerts.emit(
                "circuit_opened",
                channel=channel,
                failures=tally,
                threshold=self.failure_threshold,
                recovery_time=self.recovery_time,
            )

    async def _record_success(self, channel: str):
        tally = await self.store.get(failures_key(channel))
        if tally:
            await self.store.set(failures_key(channel), max(0, tally - 1), self.failure_window)

    async def status(self, channel: str) -> dict:
        limits = self._limits(channel)
        return {
            "channel": channel,
            "per_second": await self.store.get(rate_second_key(channel)) or 0,
            "per_second_cap": limits.per_second,
            "per_minute": await self.store.get(rate_minute_key(channel)) or 0,
            "per_minute_cap": limits.per_minute,
            "failures": await self.store.get(failures_key(channel)) or 0,
            "failure_threshold": self.failure_threshold,
            "circuit_open": await self.is_circuit_open(channel),
        }
