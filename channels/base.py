"""
Channel Senders — Base infrastructure shared by every channel transport.

Provides:
- ChannelError: structured error hierarchy (transient vs. permanent)
- TokenBucketRateLimiter: per-account messages-per-second budget
- CircuitBreaker: consecutive-failure breaker with a half-open trial call
- ChannelMetrics: per-account send counts, latency and error codes
- InputSanitizer: control-character stripping and length capping
- ChannelSender: abstract base wrapping every send with breaker + metrics
- ChannelRegistry: sender lookup by channel account id
"""
from __future__ import annotations

import abc
import time
import structlog
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Optional

from models.schemas import ChannelType, InboundEvent

logger = structlog.get_logger()

RECIPIENT_NOT_FOUND = "RECIPIENT_NOT_FOUND"


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", code: str = "CHANNEL_ERROR",
                 retryable: bool = True):
        self.channel = channel
        self.code = code
        self.retryable = retryable
        super().__init__(message)


class TransportTransientError(ChannelError):
    """Anything the queue should retry with backoff."""

    def __init__(self, message: str, channel: str = "", code: str = "TRANSIENT"):
        super().__init__(message, channel, code=code, retryable=True)


class TransportPermanentError(ChannelError):
    """Retrying is futile; the item fails immediately."""

    def __init__(self, message: str, channel: str = "", code: str = "PERMANENT"):
        super().__init__(message, channel, code=code, retryable=False)


class RecipientNotFoundError(TransportPermanentError):
    def __init__(self, message: str = "Recipient not found", channel: str = ""):
        super().__init__(message, channel, code=RECIPIENT_NOT_FOUND)


class RateLimitedError(TransportTransientError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, code="RATE_LIMITED")


class CircuitOpenError(TransportTransientError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, code="CIRCUIT_OPEN")


# ══════════════════════════════════════════════════════════════
#  ACCOUNT SEND BUDGET
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Messages-per-second budget for one channel account.

    Holds up to ``burst`` tokens and regains ``rate`` tokens per second. The
    sender never waits on it: an empty bucket defers the outbound item by
    ``retry_after()`` seconds instead.
    """

    def __init__(self, rate: float = 3.0, burst: int = 3,
                 clock: Callable[[], float] = time.monotonic):
        self.rate = max(rate, 0.001)
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._stamp = clock()

    def _top_up(self) -> None:
        now = self._clock()
        self._tokens = min(float(self.burst), self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now

    def try_acquire(self) -> bool:
        self._top_up()
        if self._tokens < 1.0:
            return False
        self._tokens -= 1.0
        return True

    def retry_after(self) -> float:
        """Seconds until one whole token is back (0 when one is available now)."""
        self._top_up()
        return max(0.0, (1.0 - self._tokens) / self.rate)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

CLOSED, OPEN, HALF_OPEN = "closed", "open", "half_open"


class CircuitBreaker:
    """
    Trips after ``failure_threshold`` consecutive transport failures.

    While open every send fails fast with CircuitOpenError; once
    ``recovery_timeout`` has passed a single trial call is let through
    (half_open) and its outcome closes or re-opens the circuit.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._tripped = False
        self._opened_at = 0.0
        self._consecutive = 0
        self.total_failures = 0
        self.total_successes = 0

    @property
    def state(self) -> str:
        if not self._tripped:
            return CLOSED
        if self._clock() - self._opened_at >= self.recovery_timeout:
            return HALF_OPEN
        return OPEN

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    def record_failure(self):
        self.total_failures += 1
        self._consecutive += 1
        if self.state == HALF_OPEN or self._consecutive >= self.failure_threshold:
            self._tripped = True
            self._opened_at = self._clock()
            logger.warning("circuit_opened", consecutive_failures=self._consecutive)

    def record_success(self):
        self.total_successes += 1
        self._tripped = False
        self._consecutive = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "consecutive_failures": self._consecutive,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  SEND METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Send outcomes for one channel account, failures counted per error code."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        self.sent = 0
        self.failed = 0
        self.errors_by_code: Counter[str] = Counter()
        self._latency_total_ms = 0.0

    def record_send(self, latency_ms: float = 0.0):
        self.sent += 1
        self._latency_total_ms += latency_ms

    def record_failure(self, code: str):
        self.failed += 1
        self.errors_by_code[code] += 1

    @property
    def avg_latency_ms(self) -> float:
        return self._latency_total_ms / self.sent if self.sent else 0.0

    @property
    def failure_rate(self) -> float:
        attempts = self.sent + self.failed
        return self.failed / attempts if attempts else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "sent": self.sent,
            "failed": self.failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "errors_by_code": dict(self.errors_by_code),
        }


# ══════════════════════════════════════════════════════════════
#  INBOUND TEXT SANITIZER
# ══════════════════════════════════════════════════════════════

_KEEP_CONTROL = frozenset("\n\t\r")
TRUNCATION_MARKER = "... [truncated]"


class InputSanitizer:
    """Drops control characters and caps inbound text at ``max_length`` characters."""

    def __init__(self, max_length: int = 4000):
        self.max_length = max_length

    def sanitize(self, content: Optional[str]) -> str:
        if not content:
            return ""
        cleaned = "".join(c for c in content if c in _KEEP_CONTROL or ord(c) >= 32).strip()
        if len(cleaned) <= self.max_length:
            return cleaned
        keep = max(self.max_length - len(TRUNCATION_MARKER), 0)
        return cleaned[:keep] + TRUNCATION_MARKER


# ══════════════════════════════════════════════════════════════
#  CHANNEL SENDER — Abstract Base
# ══════════════════════════════════════════════════════════════

@dataclass
class SendResult:
    external_message_id: str
    latency_ms: float = 0.0


class ChannelSender(abc.ABC):
    """
    Base class for all channel transports, one instance per channel account.

    Subclasses implement _do_send and _parse_inbound. The base class wraps
    every send with the circuit breaker and metrics. It does not retry:
    retry scheduling belongs to the outbound queue.
    """

    channel_type: ChannelType

    def __init__(self, account_id: str):
        self.account_id = account_id
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker()
        self._metrics = ChannelMetrics(account_id)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def _do_send(self, recipient_ref: str, text: str, metadata: dict[str, Any]) -> str:
        """Deliver one message, return the channel's message id or raise ChannelError."""
        ...

    @abc.abstractmethod
    def _parse_inbound(self, payload: dict[str, Any]) -> list[InboundEvent]:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send(self, recipient_ref: str, text: str,
                   metadata: Optional[dict[str, Any]] = None) -> SendResult:
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel_type.value)

        start = time.monotonic()
        try:
            external_id = await self._do_send(recipient_ref, text, metadata or {})
        except TransportPermanentError as e:
            # The remote side answered; the transport itself is healthy.
            self._breaker.record_success()
            self._metrics.record_failure(e.code)
            raise
        except ChannelError as e:
            self._breaker.record_failure()
            self._metrics.record_failure(e.code)
            raise

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self._metrics.record_send(latency)
        return SendResult(external_message_id=external_id, latency_ms=round(latency, 1))

    # ── Inbound ───────────────────────────────────────────────

    def parse_webhook(self, payload: dict[str, Any]) -> list[InboundEvent]:
        """Normalize a webhook body into inbound events, skipping echoes of our own sends."""
        return self._parse_inbound(payload)

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.snapshot(),
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    """Senders keyed by channel account id; conversations carry the account id."""

    def __init__(self):
        self._senders: dict[str, ChannelSender] = {}

    def register(self, sender: ChannelSender):
        self._senders[sender.account_id] = sender

    def get(self, account_id: str) -> Optional[ChannelSender]:
        return self._senders.get(account_id)

    def for_account(self, account_id: str) -> ChannelSender:
        sender = self._senders.get(account_id)
        if sender is None:
            raise TransportTransientError(
                f"No sender registered for channel account {account_id}",
                code="UNKNOWN_CHANNEL_ACCOUNT",
            )
        return sender

    def accounts(self) -> list[str]:
        return list(self._senders.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {acct: await s.health_check() for acct, s in self._senders.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for account_id, sender in self._senders.items():
            try:
                acct_cfg = configs.get(account_id, {})
                # ChannelAccountConfig dataclass → dict so senders can call .get()
                if hasattr(acct_cfg, "credentials"):
                    acct_cfg = acct_cfg.credentials
                await sender.initialize(acct_cfg)
            except Exception as e:
                logger.error("channel_init_failed", account_id=account_id, error=str(e))

    async def shutdown_all(self):
        for account_id, sender in self._senders.items():
            try:
                await sender.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", account_id=account_id, error=str(e))
