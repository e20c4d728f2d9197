"""Tests for testing utilities.

Tests the UnavailableStore double and the reset_namespace and reset_guard
functions.
"""

import pytest

from kvguard.exceptions import StoreTimeoutError, StoreUnavailableError
from kvguard.testing import UnavailableStore, reset_guard, reset_namespace


@pytest.fixture
async def populated_guard(guard):
    """Guard whose store holds keys in every namespace plus an unrelated one."""
    await guard.limiter.admit("api", "10.0.0.1", 10, 60)
    await guard.limiter.admit("login", "10.0.0.2", 10, 60)
    await guard.cache.put("GET /items", {"items": []})
    await guard.sessions.save("s1", {"user": "alice"})
    await guard.store.set("other:key", b"keep")
    return guard


class TestUnavailableStore:
    """Test the failing store double."""

    async def test_raises_unavailable(self):
        """Test that operations raise StoreUnavailableError and are recorded."""
        store = UnavailableStore()

        with pytest.raises(StoreUnavailableError):
            await store.get("k")
        with pytest.raises(StoreUnavailableError):
            await store.increment("k", ttl_seconds=60)

        assert store.calls == ["get", "increment"]

    async def test_raises_timeout(self):
        """Test the timeout flavour."""
        store = UnavailableStore(timeout=True, timeout_seconds=0.5)

        with pytest.raises(StoreTimeoutError) as exc_info:
            await store.ping()

        assert exc_info.value.timeout == 0.5
        assert exc_info.value.operation == "ping"

    async def test_scan_fails_on_iteration(self):
        """Test that scan_iter fails once iterated."""
        store = UnavailableStore()

        with pytest.raises(StoreUnavailableError):
            async for _ in store.scan_iter("cache:*"):
                pass


class TestResetNamespace:
    """Test namespace resets."""

    async def test_reset_single_namespace(self, populated_guard):
        """Test that only the given prefix is cleared."""
        store = populated_guard.store

        deleted = await reset_namespace(store, "rate_limit")

        assert deleted == 2
        assert await store.exists("rate_limit:api:10.0.0.1") is False
        assert await store.exists("session:s1") is True

    async def test_reset_empty_namespace(self, store):
        """Test that an empty namespace deletes nothing."""
        assert await reset_namespace(store, "cache") == 0

    async def test_reset_guard(self, populated_guard):
        """Test that all kv-guard namespaces are cleared and nothing else."""
        deleted = await reset_guard(populated_guard)

        assert deleted == 4
        assert await populated_guard.sessions.load("s1") is None
        assert (await populated_guard.cache.lookup("GET /items")).hit is False
        assert await populated_guard.store.get("other:key") == b"keep"

    async def test_counters_restart_after_reset(self, populated_guard):
        """Test that a reset gives identities a fresh window."""
        limiter = populated_guard.limiter
        await limiter.admit("api", "10.0.0.1", 2, 60)
        assert await limiter.admit("api", "10.0.0.1", 2, 60) is False

        await reset_guard(populated_guard)

        assert await limiter.admit("api", "10.0.0.1", 2, 60) is True
