"""Tests for the session store."""

import pytest

from kvguard.exceptions import SerializationError
from kvguard.session import SessionStore
from kvguard.testing import UnavailableStore


@pytest.mark.asyncio
class TestSessionStore:
    """Test save/load/invalidate round-trips."""

    async def test_round_trip(self, store):
        """Test that a saved document loads back unchanged."""
        sessions = SessionStore(store)
        document = {"user_id": 42, "roles": ["admin"], "active": True}

        assert await sessions.save("abc", document) is True
        assert await sessions.load("abc") == document
        assert await store.exists("session:abc")

    async def test_invalidate(self, store):
        """Test that an invalidated session loads as None."""
        sessions = SessionStore(store)
        await sessions.save("abc", {"user_id": 1})

        assert await sessions.invalidate("abc") is True
        assert await sessions.load("abc") is None
        assert await sessions.invalidate("abc") is False

    async def test_default_ttl(self, store, clock):
        """Test that sessions expire after the default TTL."""
        sessions = SessionStore(store, default_ttl=3600)
        await sessions.save("abc", {"user_id": 1})

        clock.advance(3599)
        assert await sessions.exists("abc")
        clock.advance(1)
        assert await sessions.load("abc") is None

    async def test_save_replaces_and_refreshes(self, store, clock):
        """Test that saving again replaces the document and resets the TTL."""
        sessions = SessionStore(store)
        await sessions.save("abc", {"step": 1}, ttl_seconds=60)
        clock.advance(50)
        await sessions.save("abc", {"step": 2}, ttl_seconds=60)

        assert await sessions.load("abc") == {"step": 2}
        assert await store.ttl("session:abc") == pytest.approx(60.0)

    @pytest.mark.parametrize("raw", [b"{broken", b"[1, 2, 3]"])
    async def test_malformed_document_is_absent(self, store, raw):
        """Test that unreadable documents load as None."""
        await store.set("session:abc", raw)
        assert await SessionStore(store).load("abc") is None

    async def test_non_positive_ttl_rejected(self, store):
        """Test that ttl_seconds <= 0 raises ValueError."""
        sessions = SessionStore(store)
        with pytest.raises(ValueError):
            await sessions.save("abc", {}, ttl_seconds=0)

    async def test_unserializable_document_rejected(self, store):
        """Test that non-JSON documents raise SerializationError."""
        sessions = SessionStore(store)
        with pytest.raises(SerializationError):
            await sessions.save("abc", {"when": object()})


@pytest.mark.asyncio
class TestSessionStoreDegraded:
    """Test behaviour when the store is unavailable."""

    async def test_failures_are_reported_not_raised(self):
        """Test that every operation degrades instead of raising."""
        sessions = SessionStore(UnavailableStore(timeout=True))

        assert await sessions.save("abc", {"user_id": 1}) is False
        assert await sessions.load("abc") is None
        assert await sessions.invalidate("abc") is False
        assert await sessions.exists("abc") is False
