"""Integration tests for the Redis store client against a real server.

These tests run the Lua counter script, SCAN-based invalidation and the
subscription listener on Redis itself:
- Ceiling check and set-if-absent expiry of the counter script
- Replacement of malformed counter values
- Pattern invalidation and pub/sub delivery through the guard components

Run with: pytest tests/integration -v

Requires Redis at REDIS_URL (default localhost:6379); skipped otherwise.
"""

import asyncio
import os
import uuid

import pytest

from kvguard.cache import ResponseCache
from kvguard.channel import NotificationChannel
from kvguard.exceptions import StoreUnavailableError
from kvguard.ratelimit import RateLimiter
from kvguard.stores.redis import RedisStore

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
SKIP_REDIS_TESTS = os.environ.get("SKIP_REDIS_TESTS", "").lower() == "true"

pytestmark = [
    pytest.mark.integration,
    pytest.mark.redis,
    pytest.mark.asyncio,
    pytest.mark.skipif(SKIP_REDIS_TESTS, reason="Redis tests disabled via SKIP_REDIS_TESTS"),
]


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
async def redis_store():
    """Connected Redis store; skips the test when no server answers."""
    store = RedisStore(REDIS_URL, operation_timeout=2.0, listener_poll_interval=0.05)
    try:
        await store.connect()
    except StoreUnavailableError:
        await store.close()
        pytest.skip(f"Redis not available at {REDIS_URL}")
    yield store
    await store.close()


@pytest.fixture
async def unique_prefix(redis_store):
    """Unique key prefix per test, cleaned up afterwards."""
    prefix = f"kvguard_test_{uuid.uuid4().hex[:8]}"
    yield prefix
    keys = [key async for key in redis_store.scan_iter(f"*{prefix}*")]
    if keys:
        await redis_store.delete(*keys)


# =============================================================================
# COUNTER SCRIPT
# =============================================================================


class TestIncrementScript:
    """Test the atomic increment-with-ceiling script."""

    async def test_ceiling_rejects_without_incrementing(self, redis_store, unique_prefix):
        """Test that increments stop at the ceiling and the value stays there."""
        key = f"{unique_prefix}:counter"

        updates = [await redis_store.increment(key, ttl_seconds=60, ceiling=2) for _ in range(3)]

        assert [u.applied for u in updates] == [True, True, False]
        assert [u.value for u in updates] == [1, 2, 2]
        assert await redis_store.get(key) == b"2"

    async def test_expiry_set_once(self, redis_store, unique_prefix):
        """Test that the first increment anchors the window and later ones keep it."""
        key = f"{unique_prefix}:window"

        await redis_store.increment(key, ttl_seconds=60, ceiling=10)
        first_ttl = await redis_store.ttl(key)
        await redis_store.increment(key, ttl_seconds=600, ceiling=10)
        second_ttl = await redis_store.ttl(key)

        assert first_ttl is not None and 0 < first_ttl <= 60
        assert second_ttl is not None and second_ttl <= first_ttl

    async def test_persistent_counter_gets_expiry(self, redis_store, unique_prefix):
        """Test that a counter written without expiry receives the window TTL."""
        key = f"{unique_prefix}:persistent"
        await redis_store.set(key, b"3")

        update = await redis_store.increment(key, ttl_seconds=30, ceiling=10)

        assert update.value == 4
        assert 0 < await redis_store.ttl(key) <= 30

    async def test_malformed_value_replaced(self, redis_store, unique_prefix):
        """Test that a non-numeric value restarts the counter."""
        key = f"{unique_prefix}:garbage"
        await redis_store.set(key, b"not-a-number")

        update = await redis_store.increment(key, ttl_seconds=60, ceiling=5)

        assert update.applied is True
        assert update.value == 1
        assert await redis_store.ttl(key) is not None

    async def test_no_ceiling(self, redis_store, unique_prefix):
        """Test unbounded increments."""
        key = f"{unique_prefix}:unbounded"

        for _ in range(5):
            update = await redis_store.increment(key, ttl_seconds=60)

        assert update.applied is True
        assert update.value == 5

    async def test_concurrent_admissions_never_exceed_limit(self, redis_store, unique_prefix):
        """Test that the fixed window admits exactly the limit under concurrency."""
        limiter = RateLimiter(redis_store, window_policy="fixed", key_prefix=unique_prefix)

        results = await asyncio.gather(
            *(limiter.admit("api", "10.0.0.1", 5, 60) for _ in range(20))
        )

        assert results.count(True) == 5
        assert await limiter.current_count("api", "10.0.0.1") == 5


# =============================================================================
# CACHE AND CHANNEL
# =============================================================================


class TestCacheInvalidation:
    """Test SCAN-then-DELETE invalidation on Redis."""

    async def test_invalidate_pattern(self, redis_store, unique_prefix):
        """Test that only matching entries are removed."""
        cache = ResponseCache(redis_store, key_prefix=unique_prefix)
        await cache.put("GET /items?page=1", {"page": 1})
        await cache.put("GET /items?page=2", {"page": 2})
        await cache.put("GET /users", [])

        deleted = await cache.invalidate_pattern("GET /items*")

        assert deleted == 2
        assert (await cache.lookup("GET /items?page=1")).hit is False
        assert (await cache.lookup("GET /users")).hit is True


class TestChannelDelivery:
    """Test publish/subscribe through the dedicated listener connection."""

    async def test_round_trip(self, redis_store, unique_prefix):
        """Test that a published message reaches the subscribed handler."""
        channel = NotificationChannel(redis_store)
        received: asyncio.Queue[str] = asyncio.Queue()
        name = f"{unique_prefix}:events"

        await channel.subscribe(name, received.put_nowait)
        try:
            receivers = await channel.publish(name, {"type": "created"})
            message = await asyncio.wait_for(received.get(), timeout=2.0)
        finally:
            await channel.close()

        assert receivers == 1
        assert message == '{"type":"created"}'
