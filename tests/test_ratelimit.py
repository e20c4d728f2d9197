"""Tests for the fixed-window rate limiter.

These tests verify:
- The first `limit` admissions succeed and the next one is rejected
- A fresh window starts once the previous one has elapsed
- The "fixed" policy never re-arms the window; "rearm" does
- Fail-open on store failures and timeouts
- current_count reads without modifying
"""

import asyncio

import pytest

from kvguard.ratelimit import RateLimiter
from kvguard.testing import UnavailableStore


class TestRateLimiterConfiguration:
    """Test limiter construction and validation."""

    def test_unknown_window_policy_rejected(self):
        """Test that an unknown window policy raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            RateLimiter(UnavailableStore(), window_policy="sliding")  # type: ignore[arg-type]

        assert "window_policy" in str(exc_info.value)

    def test_counter_key_layout(self):
        """Test that counters live under rate_limit:<scope>:<identity>."""
        limiter = RateLimiter(UnavailableStore())
        assert limiter.key("api", "10.0.0.1") == "rate_limit:api:10.0.0.1"


@pytest.mark.asyncio
class TestFixedWindow:
    """Test the default atomic fixed-window policy."""

    async def test_admits_up_to_limit(self, store):
        """Test that exactly `limit` requests are admitted."""
        limiter = RateLimiter(store)

        results = [await limiter.admit("api", "u1", 3, 60) for _ in range(4)]

        assert results == [True, True, True, False]
        assert await limiter.current_count("api", "u1") == 3

    async def test_rejections_do_not_increment(self, store):
        """Test that rejected requests leave the counter at the limit."""
        limiter = RateLimiter(store)
        for _ in range(5):
            await limiter.admit("api", "u1", 2, 60)

        assert await store.get("rate_limit:api:u1") == b"2"

    async def test_new_window_after_expiry(self, store, clock):
        """Test that a fresh window starts after the window elapses."""
        limiter = RateLimiter(store)
        assert await limiter.admit("api", "u1", 1, 60)
        assert not await limiter.admit("api", "u1", 1, 60)

        clock.advance(60)

        assert await limiter.admit("api", "u1", 1, 60)
        assert await limiter.current_count("api", "u1") == 1

    async def test_window_anchored_at_first_request(self, store, clock):
        """Test that sustained traffic does not extend the window."""
        limiter = RateLimiter(store)
        await limiter.admit("api", "u1", 100, 60)
        clock.advance(50)
        await limiter.admit("api", "u1", 100, 60)

        assert await store.ttl("rate_limit:api:u1") == pytest.approx(10.0)

    async def test_identities_and_scopes_are_independent(self, store):
        """Test that counters are kept per (scope, identity)."""
        limiter = RateLimiter(store)
        assert await limiter.admit("api", "u1", 1, 60)
        assert await limiter.admit("api", "u2", 1, 60)
        assert await limiter.admit("login", "u1", 1, 60)
        assert not await limiter.admit("api", "u1", 1, 60)

    async def test_concurrent_requests_do_not_over_admit(self, store):
        """Test that concurrent admissions never exceed the limit."""
        limiter = RateLimiter(store)

        results = await asyncio.gather(*(limiter.admit("api", "u1", 5, 60) for _ in range(20)))

        assert sum(results) == 5

    async def test_invalid_policy_raises(self, store):
        """Test that non-positive limit or window raises ValueError."""
        limiter = RateLimiter(store)

        with pytest.raises(ValueError):
            await limiter.admit("api", "u1", 0, 60)
        with pytest.raises(ValueError):
            await limiter.admit("api", "u1", 10, 0)


@pytest.mark.asyncio
class TestRearmWindow:
    """Test the read-then-write policy."""

    async def test_admits_up_to_limit(self, store):
        """Test that the rearm policy enforces the same limit when serialized."""
        limiter = RateLimiter(store, window_policy="rearm")

        results = [await limiter.admit("api", "u1", 2, 60) for _ in range(3)]

        assert results == [True, True, False]

    async def test_admission_rearms_window(self, store, clock):
        """Test that each admitted request re-applies the full window TTL."""
        limiter = RateLimiter(store, window_policy="rearm")
        await limiter.admit("api", "u1", 100, 60)
        clock.advance(50)
        await limiter.admit("api", "u1", 100, 60)

        assert await store.ttl("rate_limit:api:u1") == pytest.approx(60.0)


@pytest.mark.asyncio
class TestCheck:
    """Test check() results used for response headers."""

    async def test_check_reports_counter_state(self, store, clock):
        """Test that check() reports count, remaining and reset time."""
        limiter = RateLimiter(store)
        await limiter.check("api", "u1", 10, 60)
        clock.advance(15)

        result = await limiter.check("api", "u1", 10, 60)

        assert result.allowed is True
        assert result.count == 2
        assert result.remaining == 8
        assert result.reset_in == pytest.approx(45.0)

    async def test_check_rejected(self, store):
        """Test a rejected check result."""
        limiter = RateLimiter(store)
        await limiter.check("api", "u1", 1, 60)

        result = await limiter.check("api", "u1", 1, 60)

        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after >= 1


@pytest.mark.asyncio
class TestFailOpen:
    """Test admission when the store is unavailable."""

    @pytest.mark.parametrize("timeout", [False, True])
    async def test_admits_everything(self, timeout):
        """Test that every request is admitted when every store op fails."""
        limiter = RateLimiter(UnavailableStore(timeout=timeout))

        results = [await limiter.admit("api", "u1", 1, 60) for _ in range(5)]

        assert all(results)
        assert limiter.metrics.fail_open_admissions == 5
        assert limiter.metrics.store_errors == 5

    async def test_rearm_policy_fails_open(self):
        """Test that the rearm policy also admits on failure."""
        limiter = RateLimiter(UnavailableStore(), window_policy="rearm")
        assert await limiter.admit("api", "u1", 1, 60)

    async def test_check_fails_open(self):
        """Test that check() admits with an empty counter on failure."""
        limiter = RateLimiter(UnavailableStore(timeout=True))

        result = await limiter.check("api", "u1", 10, 60)

        assert result.allowed is True
        assert result.count == 0
        assert result.remaining == 10

    async def test_current_count_reads_zero(self):
        """Test that current_count returns 0 when the store fails."""
        limiter = RateLimiter(UnavailableStore())
        assert await limiter.current_count("api", "u1") == 0


@pytest.mark.asyncio
class TestCurrentCount:
    """Test pure counter reads."""

    async def test_absent_counter_is_zero(self, store):
        """Test that an absent counter reads as 0."""
        limiter = RateLimiter(store)
        assert await limiter.current_count("api", "nobody") == 0

    async def test_malformed_counter_is_zero(self, store):
        """Test that a malformed counter reads as 0."""
        await store.set("rate_limit:api:u1", b"garbage")
        limiter = RateLimiter(store)
        assert await limiter.current_count("api", "u1") == 0

    async def test_read_does_not_modify(self, store):
        """Test that current_count leaves the counter untouched."""
        limiter = RateLimiter(store)
        await limiter.admit("api", "u1", 10, 60)

        for _ in range(3):
            assert await limiter.current_count("api", "u1") == 1
