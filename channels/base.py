"""
Delivery Channels — Base infrastructure for outbound notification delivery.

Provides:
- DeliveryError: retryable vs. permanent error hierarchy
- DeliveryReceipt: what a successful send returns
- CircuitBreaker: consecutive-failure breaker with a half-open probe
- ChannelMetrics: in-process send/fail/latency counters
- DeliveryChannel: abstract base every channel implements
"""
from __future__ import annotations

import abc
import time
import structlog
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class DeliveryError(Exception):
    """Base exception for all delivery failures."""

    def __init__(self, message: str, channel: str = "", retryable: bool = True):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class PermanentDeliveryError(DeliveryError):
    """Destination-level rejection: invalid chat, bot blocked, bad request."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=False)


class TransientDeliveryError(DeliveryError):
    """Timeouts, rate limiting, provider 5xx."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=True)


class CircuitOpenError(DeliveryError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


@dataclass
class DeliveryReceipt:
    message_id: str
    latency_ms: float


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure breaker for one delivery channel.

    After failure_threshold retryable failures in a row, sends are refused
    for recovery_timeout seconds. The first send after that is a probe: a
    success closes the breaker, a failure opens it again.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.consecutive_failures = 0
        self.trips = 0
        self._open_until: Optional[float] = None

    @property
    def state(self) -> BreakerState:
        if self._open_until is None:
            return BreakerState.CLOSED
        if time.monotonic() < self._open_until:
            return BreakerState.OPEN
        return BreakerState.HALF_OPEN

    def allow(self) -> bool:
        return self.state != BreakerState.OPEN

    def on_failure(self) -> None:
        self.consecutive_failures += 1
        if self.state == BreakerState.HALF_OPEN or self.consecutive_failures >= self.failure_threshold:
            self._open_until = time.monotonic() + self.recovery_timeout
            self.trips += 1
            logger.warning("delivery_circuit_opened", failures=self.consecutive_failures,
                           retry_in_s=self.recovery_timeout)

    def on_success(self) -> None:
        if self._open_until is not None:
            logger.info("delivery_circuit_closed")
        self.consecutive_failures = 0
        self._open_until = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "trips": self.trips,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

@dataclass
class ChannelMetrics:
    """In-process send counters for one channel (durable metrics live in the store)."""

    channel: str
    sent: int = 0
    failed: int = 0
    permanent: int = 0
    latencies: deque = field(default_factory=lambda: deque(maxlen=500))
    recent_errors: deque = field(default_factory=lambda: deque(maxlen=10))

    def record_sent(self, latency_ms: float) -> None:
        self.sent += 1
        self.latencies.append(latency_ms)

    def record_failed(self, error: str, permanent: bool = False) -> None:
        self.failed += 1
        if permanent:
            self.permanent += 1
        self.recent_errors.append(error)

    def snapshot(self) -> dict[str, Any]:
        attempts = self.sent + self.failed
        return {
            "channel": self.channel,
            "sent": self.sent,
            "failed": self.failed,
            "permanent": self.permanent,
            "avg_latency_ms": round(sum(self.latencies) / len(self.latencies), 1) if self.latencies else 0.0,
            "failure_rate": round(self.failed / attempts, 4) if attempts else 0.0,
            "recent_errors": list(self.recent_errors),
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY CHANNEL — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryChannel(abc.ABC):
    """
    A destination-addressed text sender (Telegram chat, log, ...).

    Subclasses implement _do_send. send() adds the breaker, latency and
    metrics, and turns any unexpected exception into TransientDeliveryError
    so the dispatch queue only ever sees DeliveryError.
    """

    name: str = "channel"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self.metrics = ChannelMetrics(self.name)

    @abc.abstractmethod
    async def _do_send(self, destination: str, message: str) -> str:
        """Deliver one message; return the channel-assigned message id."""

    async def send(self, destination: str, message: str) -> DeliveryReceipt:
        if not self.breaker.allow():
            self.metrics.record_failed("circuit_open")
            raise CircuitOpenError(self.name)

        started = time.monotonic()
        try:
            message_id = await self._do_send(destination, message)
        except DeliveryError as e:
            # only retryable failures count against the breaker
            if e.retryable:
                self.breaker.on_failure()
            self.metrics.record_failed(str(e), permanent=not e.retryable)
            raise
        except Exception as e:
            self.breaker.on_failure()
            self.metrics.record_failed(str(e))
            raise TransientDeliveryError(str(e), self.name) from e

        latency_ms = round((time.monotonic() - started) * 1000, 1)
        self.breaker.on_success()
        self.metrics.record_sent(latency_ms)
        return DeliveryReceipt(message_id=str(message_id), latency_ms=latency_ms)

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "circuit_breaker": self.breaker.snapshot(),
            "metrics": self.metrics.snapshot(),
        }

    async def close(self) -> None:
        """Release network resources, if any."""
