from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Protocol

logger = logging.getLogger(__name__)


class RateLimitStatus(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    # The counter store could not be consulted; the request is let through.
    DEGRADED = "degraded"


@dataclass(frozen=True)
class RateLimitProfile:
    name: str
    limit: int
    window_seconds: float


REPORT_SUBMISSION = RateLimitProfile("report", limit=5, window_seconds=15 * 60)
DOMAIN_OPERATIONS = RateLimitProfile("domain", limit=10, window_seconds=10)
MESSAGING = RateLimitProfile("message", limit=20, window_seconds=60 * 60)
AUTHENTICATION = RateLimitProfile("auth", limit=5, window_seconds=15 * 60)
GENERAL_API = RateLimitProfile("api", limit=60, window_seconds=60)

PROFILES: dict[str, RateLimitProfile] = {
    "report_submission": REPORT_SUBMISSION,
    "domain_operations": DOMAIN_OPERATIONS,
    "messaging": MESSAGING,
    "authentication": AUTHENTICATION,
    "general_api": GENERAL_API,
}

# Seconds until a degraded (fail-open) result says the client may retry.
DEGRADED_RESET_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitWindow:
    """State of one sliding window after a hit, as reported by the store."""

    key: str
    window_start: float
    count: int
    limit: int
    window_duration: float
    admitted: bool


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    status: RateLimitStatus

    @property
    def degraded(self) -> bool:
        return self.status is RateLimitStatus.DEGRADED

    def retry_after_seconds(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_at - now))

    def headers(self, now: float | None = None) -> dict[str, str]:
        """Response headers so clients can back off."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds(now))
        return headers


class CounterStore(Protocol):
    """Shared store that owns the correctness of concurrent increments."""

    async def hit(
        self, key: str, now: float, window: float, limit: int
    ) -> RateLimitWindow:
        """Prune entries older than *window*, admit one if under *limit*."""
        ...


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class InMemoryCounterStore:
    """Sliding-log store for a single process (development and tests).

    Not shared between instances, so limits are per process. Keys whose
    log has aged out of its window are swept every ``sweep_interval``
    seconds so one-off identifiers do not accumulate.
    """

    def __init__(self, sweep_interval: float = 60.0) -> None:
        self._logs: dict[str, deque[float]] = {}
        self._windows: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval
        self._last_sweep: float | None = None

    def __len__(self) -> int:
        return len(self._logs)

    def _sweep(self, now: float) -> None:
        stale = [
            key
            for key, log in self._logs.items()
            if not log or log[-1] <= now - self._windows.get(key, 0.0)
        ]
        for key in stale:
            del self._logs[key]
            self._windows.pop(key, None)
        if stale:
            logger.debug("Swept %d idle rate limit keys", len(stale))
        self._last_sweep = now

    async def hit(
        self, key: str, now: float, window: float, limit: int
    ) -> RateLimitWindow:
        async with self._lock:
            if self._last_sweep is None:
                self._last_sweep = now
            elif now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)
            log = self._logs.setdefault(key, deque())
            self._windows[key] = window
            cutoff = now - window
            while log and log[0] <= cutoff:
                log.popleft()
            admitted = len(log) < limit
            if admitted:
                log.append(now)
            window_start = log[0] if log else now
            if not log:
                del self._logs[key]
                del self._windows[key]
            return RateLimitWindow(
                key=key,
                window_start=window_start,
                count=len(log),
                limit=limit,
                window_duration=window,
                admitted=admitted,
            )


# KEYS[1] = sorted set of hit timestamps (ms)
# ARGV = now_ms, window_ms, limit, member
_SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local admitted = 0
if count < limit then
  redis.call('ZADD', key, now, ARGV[4])
  count = count + 1
  admitted = 1
end
redis.call('PEXPIRE', key, window)
local window_start = now
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
  window_start = tonumber(oldest[2])
end
return {admitted, count, window_start}
"""


class RedisCounterStore:
    """Sliding-log store in Redis; prune, count and admit run as one script."""

    def __init__(self, client: Any) -> None:
        self._client = client
        self._script = client.register_script(_SLIDING_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str, timeout: float = 1.0) -> "RedisCounterStore":
        import redis.asyncio as aioredis

        client = aioredis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=False,
        )
        return cls(client)

    async def hit(
        self, key: str, now: float, window: float, limit: int
    ) -> RateLimitWindow:
        now_ms = int(now * 1000)
        window_ms = int(window * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex}"
        admitted, count, window_start_ms = await self._script(
            keys=[key], args=[now_ms, window_ms, limit, member]
        )
        return RateLimitWindow(
            key=key,
            window_start=int(window_start_ms) / 1000,
            count=int(count),
            limit=limit,
            window_duration=window,
            admitted=bool(int(admitted)),
        )

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Sliding-window admission control that fails open.

    A store outage, error or timeout yields ``allowed=True`` with
    ``status=DEGRADED``: the submission channel may be a reporter's only
    avenue, so the limiter is a courtesy control, not a security boundary.
    """

    def __init__(
        self,
        store: CounterStore,
        timeout: float = 1.0,
        key_prefix: str = "cloak:ratelimit",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._timeout = timeout
        self._key_prefix = key_prefix
        self._clock = clock

    @property
    def store(self) -> CounterStore:
        return self._store

    async def close(self) -> None:
        close = getattr(self._store, "close", None)
        if close is not None:
            await close()

    def _key(self, identifier: str, profile: RateLimitProfile) -> str:
        return f"{self._key_prefix}:{profile.name}:{identifier}"

    async def check_limit(
        self, identifier: str, profile: RateLimitProfile
    ) -> RateLimitResult:
        identifier = identifier or "anonymous"
        now = self._clock()
        try:
            window = await asyncio.wait_for(
                self._store.hit(
                    self._key(identifier, profile),
                    now,
                    profile.window_seconds,
                    profile.limit,
                ),
                timeout=self._timeout,
            )
        except Exception as exc:
            logger.error(
                "Rate limit store unavailable for profile %s, failing open: %r",
                profile.name,
                exc,
            )
            return RateLimitResult(
                allowed=True,
                limit=0,
                remaining=0,
                reset_at=now + DEGRADED_RESET_SECONDS,
                status=RateLimitStatus.DEGRADED,
            )

        result = RateLimitResult(
            allowed=window.admitted,
            limit=profile.limit,
            remaining=max(0, profile.limit - window.count) if window.admitted else 0,
            reset_at=window.window_start + window.window_duration,
            status=RateLimitStatus.ALLOWED if window.admitted else RateLimitStatus.DENIED,
        )
        logger.info(
            "Rate limit %s: %s (%d/%d remaining)",
            profile.name,
            result.status.value,
            result.remaining,
            result.limit,
        )
        return result


def client_identifier(headers: Mapping[str, str], peer: str | None = None) -> str:
    """Best-effort network identifier for anonymous callers.

    Uses the first hop of ``x-forwarded-for``, then ``cf-connecting-ip``,
    ``x-real-ip`` and the socket peer.  Not an authenticated identity.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = headers.get(header)
        if value and value.strip():
            return value.strip()
    return peer or "anonymous"
