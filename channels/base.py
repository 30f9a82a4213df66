"""
Channel Adapters — messaging transport infrastructure.

Provides:
- ChannelError: structured error hierarchy
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: per-channel send/fail/latency tracking
- MessageDeduplicator / InputSanitizer: inbound hygiene
- ChannelAdapter: abstract base wrapping every send with resilience
- ChannelRegistry: routes sends for each user account to its adapter

The flow engine only ever sees ``send_to_contact(user_id, contact, payload)``;
the registry is handed to it explicitly instead of adapters being looked up
from module-level state.
"""
from __future__ import annotations

import abc
import asyncio
import time
import uuid
import structlog
from typing import Any, Optional, Protocol

from models.schemas import ChannelType, DeliveryResult, InboundMessage, OutboundPayload

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  TRANSPORT CONTRACT
# ══════════════════════════════════════════════════════════════

class Transport(Protocol):
    """What the flow engine needs from the messaging layer."""

    async def send_to_contact(
        self, user_id: str, contact: str, payload: OutboundPayload,
    ) -> DeliveryResult:
        ...


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait = min(1.0 / max(self.rate, 0.001), remaining)
            await asyncio.sleep(wait)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Synchronous circuit breaker with failure counting.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure and latency metrics."""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.messages_received: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-1000]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-100]

    def record_inbound(self):
        self.messages_received += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "received": self.messages_received,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for deduplicating inbound messages (webhook redelivery)."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        while len(self._seen) > self.max_size:
            self._seen.pop(next(iter(self._seen)))


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length]
        return content.strip()

    def sanitize_metadata(self, metadata: dict[str, Any]) -> dict[str, Any]:
        safe = {}
        for k, v in metadata.items():
            if isinstance(v, (str, int, float, bool)) or v is None:
                safe[k] = v
            elif isinstance(v, dict):
                safe[k] = self.sanitize_metadata(v)
            elif isinstance(v, list):
                safe[k] = [
                    self.sanitize_metadata(i) if isinstance(i, dict) else i
                    for i in v[:50]
                ]
            else:
                safe[k] = str(v)[:500]
        return safe


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement _do_send and _parse_inbound. The base class wraps
    every send with rate limiting, circuit breaker, retry and metrics, and
    every inbound payload with deduplication and sanitizing.
    """

    channel_type: ChannelType
    max_send_attempts: int = 3

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker()
        self._rate_limiter: Optional[TokenBucketRateLimiter] = None
        self._metrics: Optional[ChannelMetrics] = None
        self._deduplicator = MessageDeduplicator()
        self._sanitizer = InputSanitizer()

    def _ensure_metrics(self):
        if self._metrics is None:
            self._metrics = ChannelMetrics(self.channel_type)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, contact: str, payload: OutboundPayload) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send(self, contact: str, payload: OutboundPayload) -> DeliveryResult:
        self._ensure_metrics()
        message_id = str(uuid.uuid4())
        start = time.monotonic()

        if self._rate_limiter:
            if not await self._rate_limiter.acquire(timeout=10.0):
                self._metrics.record_failure("rate_limited")
                return DeliveryResult(status="rate_limited", message_id=message_id,
                                      error=str(RateLimitedError(self.channel_type.value)))

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            return DeliveryResult(status="circuit_open", message_id=message_id,
                                  error=str(CircuitOpenError(self.channel_type.value)))

        last_error = ""
        for attempt in range(self.max_send_attempts):
            try:
                result = await self._do_send(contact, payload)
            except ChannelError as e:
                last_error = str(e)
                self._breaker.record_failure()
                if not e.retryable or attempt == self.max_send_attempts - 1:
                    break
                await asyncio.sleep(min(1.0 * (2 ** attempt), 10.0))
                continue
            except Exception as e:
                # Unknown failure: the message may already be out, so no resend
                last_error = str(e)
                self._breaker.record_failure()
                break

            latency = (time.monotonic() - start) * 1000
            if result.get("status") == "failed":
                self._breaker.record_failure()
                self._metrics.record_failure(result.get("error", ""))
                return DeliveryResult(status="failed", message_id=result.get("message_id", message_id),
                                      error=result.get("error", ""), attempts=attempt + 1)

            self._breaker.record_success()
            self._metrics.record_send(latency)
            return DeliveryResult(status=result.get("status", "sent"),
                                  message_id=result.get("message_id", message_id),
                                  attempts=attempt + 1)

        self._metrics.record_failure(last_error)
        logger.error("channel_send_failed", channel=self.channel_type.value,
                     contact=contact, error=last_error)
        return DeliveryResult(status="failed", message_id=message_id, error=last_error)

    # ── Inbound ───────────────────────────────────────────────

    async def handle_inbound(self, raw_payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        """
        Parse a raw channel payload into
        ``{"sender_address": str, "content": str, "metadata": dict}``.
        Returns None for non-message payloads and redelivered duplicates.
        """
        parsed = await self._parse_inbound(raw_payload)
        if not parsed:
            return None

        msg_id = parsed.get("metadata", {}).get("channel_message_id") or ""
        if msg_id and self._deduplicator.is_duplicate(msg_id):
            logger.debug("inbound_duplicate_dropped", channel=self.channel_type.value, msg_id=msg_id)
            return None

        self._ensure_metrics()
        self._metrics.record_inbound()
        parsed["content"] = self._sanitizer.sanitize(parsed.get("content", ""))
        parsed["metadata"] = self._sanitizer.sanitize_metadata(parsed.get("metadata", {}))
        return parsed

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        return None

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        self._ensure_metrics()
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    """
    Maps each user account to the adapter that speaks for it.
    A default adapter serves accounts without their own registration.
    Implements the Transport contract consumed by the flow engine.
    """

    def __init__(self, default: ChannelAdapter = None):
        self._default = default
        self._adapters: dict[str, ChannelAdapter] = {}

    def register(self, user_id: str, adapter: ChannelAdapter):
        self._adapters[user_id] = adapter

    def unregister(self, user_id: str) -> None:
        self._adapters.pop(user_id, None)

    def get(self, user_id: str) -> Optional[ChannelAdapter]:
        return self._adapters.get(user_id, self._default)

    async def send_to_contact(
        self, user_id: str, contact: str, payload: OutboundPayload,
    ) -> DeliveryResult:
        adapter = self.get(user_id)
        if adapter is None:
            logger.error("no_channel_for_user", user_id=user_id)
            return DeliveryResult(status="failed", error=f"No channel registered for user {user_id}")
        return await adapter.send(contact, payload)

    async def parse_inbound(self, user_id: str, raw_payload: dict[str, Any]) -> Optional[InboundMessage]:
        adapter = self.get(user_id)
        if adapter is None:
            return None
        parsed = await adapter.handle_inbound(raw_payload)
        if not parsed or not parsed.get("sender_address"):
            return None
        return InboundMessage(
            user_id=user_id,
            contact=parsed["sender_address"],
            text=parsed.get("content", ""),
            metadata=parsed.get("metadata", {}),
        )

    async def health_check_all(self) -> dict[str, Any]:
        checks = {uid: await a.health_check() for uid, a in self._adapters.items()}
        if self._default is not None:
            checks["_default"] = await self._default.health_check()
        return checks

    async def shutdown_all(self):
        adapters = list(self._adapters.values())
        if self._default is not None:
            adapters.append(self._default)
        for a in adapters:
            try:
                await a.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=a.channel_type.value, error=str(e))
