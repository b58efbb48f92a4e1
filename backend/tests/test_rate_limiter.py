"""Tests for cloak.rate_limiter: sliding windows, fail-open and identifiers."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from cloak.rate_limiter import (
    GENERAL_API,
    MESSAGING,
    PROFILES,
    REPORT_SUBMISSION,
    InMemoryCounterStore,
    RateLimiter,
    RateLimitResult,
    RateLimitStatus,
    RedisCounterStore,
    client_identifier,
)


class FailingStore:
    async def hit(self, key, now, window, limit):
        raise ConnectionError("redis unreachable")


class HangingStore:
    async def hit(self, key, now, window, limit):
        await asyncio.sleep(10)


# -----------------------------------------------------------------------
# Profiles
# -----------------------------------------------------------------------


class TestProfiles:
    """The operation profiles carry the configured windows and thresholds."""

    @pytest.mark.parametrize(
        "name,limit,window",
        [
            ("report_submission", 5, 15 * 60),
            ("domain_operations", 10, 10),
            ("messaging", 20, 60 * 60),
            ("authentication", 5, 15 * 60),
            ("general_api", 60, 60),
        ],
    )
    def test_profile_table(self, name: str, limit: int, window: int):
        profile = PROFILES[name]
        assert profile.limit == limit
        assert profile.window_seconds == window


# -----------------------------------------------------------------------
# Sliding window
# -----------------------------------------------------------------------


class TestSlidingWindow:
    """Admission against the in-process store with a controlled clock."""

    @pytest.mark.asyncio
    async def test_sixty_first_general_call_is_denied(self, memory_limiter: RateLimiter):
        results = [await memory_limiter.check_limit("10.0.0.1", GENERAL_API) for _ in range(61)]
        assert all(r.allowed for r in results[:60])
        assert results[59].remaining == 0
        denied = results[60]
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.status is RateLimitStatus.DENIED
        assert denied.limit == 60

    @pytest.mark.asyncio
    async def test_remaining_counts_down(self, memory_limiter: RateLimiter):
        first = await memory_limiter.check_limit("1.2.3.4", REPORT_SUBMISSION)
        second = await memory_limiter.check_limit("1.2.3.4", REPORT_SUBMISSION)
        assert (first.remaining, second.remaining) == (4, 3)
        assert first.status is RateLimitStatus.ALLOWED

    @pytest.mark.asyncio
    async def test_identifiers_are_independent(self, memory_limiter: RateLimiter):
        for _ in range(5):
            await memory_limiter.check_limit("1.1.1.1", REPORT_SUBMISSION)
        assert not (await memory_limiter.check_limit("1.1.1.1", REPORT_SUBMISSION)).allowed
        assert (await memory_limiter.check_limit("2.2.2.2", REPORT_SUBMISSION)).allowed

    @pytest.mark.asyncio
    async def test_profiles_are_independent(self, memory_limiter: RateLimiter):
        for _ in range(5):
            await memory_limiter.check_limit("1.1.1.1", REPORT_SUBMISSION)
        assert (await memory_limiter.check_limit("1.1.1.1", MESSAGING)).allowed

    @pytest.mark.asyncio
    async def test_window_slides(self, memory_limiter: RateLimiter, clock):
        first = await memory_limiter.check_limit("1.1.1.1", REPORT_SUBMISSION)
        clock.advance(60)
        for _ in range(4):
            await memory_limiter.check_limit("1.1.1.1", REPORT_SUBMISSION)
        denied = await memory_limiter.check_limit("1.1.1.1", REPORT_SUBMISSION)
        assert not denied.allowed
        # The oldest hit expires first
        assert denied.reset_at == first.reset_at
        assert denied.retry_after_seconds(clock()) == 15 * 60 - 60

        clock.advance(15 * 60 - 60)
        assert (await memory_limiter.check_limit("1.1.1.1", REPORT_SUBMISSION)).allowed

    @pytest.mark.asyncio
    async def test_concurrent_checks_never_over_admit(self, memory_limiter: RateLimiter):
        results = await asyncio.gather(
            *[memory_limiter.check_limit("9.9.9.9", REPORT_SUBMISSION) for _ in range(20)]
        )
        assert sum(r.allowed for r in results) == 5


# -----------------------------------------------------------------------
# In-memory key eviction
# -----------------------------------------------------------------------


class TestInMemoryEviction:
    """Idle identifiers are dropped once their window has passed."""

    @pytest.mark.asyncio
    async def test_idle_keys_are_swept(self, clock):
        store = InMemoryCounterStore()
        limiter = RateLimiter(store, timeout=1.0, clock=clock)
        for i in range(5000):
            await limiter.check_limit(f"10.0.{i // 256}.{i % 256}", GENERAL_API)
        assert len(store) == 5000

        clock.advance(3600)
        await limiter.check_limit("192.168.0.1", GENERAL_API)
        assert len(store) <= 1

    @pytest.mark.asyncio
    async def test_active_keys_survive_a_sweep(self, clock):
        store = InMemoryCounterStore(sweep_interval=10.0)
        limiter = RateLimiter(store, timeout=1.0, clock=clock)
        await limiter.check_limit("1.1.1.1", REPORT_SUBMISSION)
        await limiter.check_limit("2.2.2.2", GENERAL_API)

        # Past the general window, still inside the submission window
        clock.advance(120)
        await limiter.check_limit("3.3.3.3", GENERAL_API)
        assert len(store) == 2
        result = await limiter.check_limit("1.1.1.1", REPORT_SUBMISSION)
        assert result.remaining == 3


# -----------------------------------------------------------------------
# Fail open
# -----------------------------------------------------------------------


class TestFailOpen:
    """Store trouble lets the request through with a DEGRADED status."""

    @pytest.mark.asyncio
    async def test_store_error_fails_open(self, clock):
        limiter = RateLimiter(FailingStore(), clock=clock)
        result = await limiter.check_limit("1.1.1.1", GENERAL_API)
        assert result.allowed
        assert result.status is RateLimitStatus.DEGRADED
        assert result.degraded
        assert (result.limit, result.remaining) == (0, 0)
        assert result.reset_at == clock() + 60

    @pytest.mark.asyncio
    async def test_store_timeout_fails_open(self, clock):
        limiter = RateLimiter(HangingStore(), timeout=0.01, clock=clock)
        result = await limiter.check_limit("1.1.1.1", GENERAL_API)
        assert result.allowed
        assert result.status is RateLimitStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_fail_open_is_logged(self, clock, caplog):
        limiter = RateLimiter(FailingStore(), clock=clock)
        with caplog.at_level("ERROR", logger="cloak.rate_limiter"):
            await limiter.check_limit("1.1.1.1", GENERAL_API)
        assert "failing open" in caplog.text


# -----------------------------------------------------------------------
# Redis store
# -----------------------------------------------------------------------


class TestRedisCounterStore:
    """The Redis store runs one script per hit and decodes its reply."""

    @pytest.mark.asyncio
    async def test_hit_calls_script_with_millisecond_arguments(self):
        script = AsyncMock(return_value=[1, 3, 1_700_000_000_000])
        client = MagicMock()
        client.register_script.return_value = script
        store = RedisCounterStore(client)

        window = await store.hit("k", 1_700_000_000.5, 60, 60)

        kwargs = script.await_args.kwargs
        assert kwargs["keys"] == ["k"]
        assert kwargs["args"][:3] == [1_700_000_000_500, 60_000, 60]
        assert window.admitted is True
        assert window.count == 3
        assert window.window_start == 1_700_000_000.0

    @pytest.mark.asyncio
    async def test_members_are_unique(self):
        script = AsyncMock(return_value=[1, 1, 0])
        client = MagicMock()
        client.register_script.return_value = script
        store = RedisCounterStore(client)

        await store.hit("k", 1.0, 60, 60)
        await store.hit("k", 1.0, 60, 60)
        members = [c.kwargs["args"][3] for c in script.await_args_list]
        assert members[0] != members[1]

    @pytest.mark.asyncio
    async def test_limiter_over_redis_store_denies(self, clock):
        script = AsyncMock(return_value=[0, 60, int(clock() * 1000) - 30_000])
        client = MagicMock()
        client.register_script.return_value = script
        limiter = RateLimiter(RedisCounterStore(client), clock=clock)

        result = await limiter.check_limit("1.1.1.1", GENERAL_API)
        assert not result.allowed
        assert result.remaining == 0
        assert result.retry_after_seconds(clock()) == 30


# -----------------------------------------------------------------------
# Headers and identifiers
# -----------------------------------------------------------------------


class TestHeaders:
    def test_denied_result_carries_retry_after(self):
        result = RateLimitResult(
            allowed=False, limit=5, remaining=0, reset_at=1000.2,
            status=RateLimitStatus.DENIED,
        )
        headers = result.headers(now=990.0)
        assert headers == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "1001",
            "Retry-After": "11",
        }

    def test_allowed_result_has_no_retry_after(self):
        result = RateLimitResult(
            allowed=True, limit=5, remaining=4, reset_at=1000.0,
            status=RateLimitStatus.ALLOWED,
        )
        assert "Retry-After" not in result.headers(now=990.0)


class TestClientIdentifier:
    """Forwarding header chain, then the socket peer, then "anonymous"."""

    def test_first_forwarded_hop_wins(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1", "cf-connecting-ip": "1.1.1.1"}
        assert client_identifier(headers, "127.0.0.1") == "203.0.113.7"

    def test_cloudflare_header(self):
        assert client_identifier({"cf-connecting-ip": "198.51.100.2"}) == "198.51.100.2"

    def test_real_ip_header(self):
        assert client_identifier({"x-real-ip": "198.51.100.3"}) == "198.51.100.3"

    def test_peer_fallback(self):
        assert client_identifier({}, "192.0.2.1") == "192.0.2.1"

    def test_anonymous_fallback(self):
        assert client_identifier({"x-forwarded-for": " "}, None) == "anonymous"
