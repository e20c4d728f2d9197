"""Session documents stored under ``session:<id>``.

Each save replaces the whole document and resets its TTL; concurrent saves
to the same id resolve as last-writer-wins. Reads never raise for transport
failures: an unreachable store reads as an absent session.
"""

import json
import logging
from typing import Any

from kvguard.contrib.prometheus.metrics import record_store_error
from kvguard.core import GuardMetrics, StoreClient
from kvguard.exceptions import SerializationError, StoreUnavailableError
from kvguard.keys import SESSION_PREFIX, namespaced

logger = logging.getLogger(__name__)


class SessionStore:
    """Save, load and invalidate JSON session documents.

    Example:
        >>> sessions = SessionStore(store, default_ttl=3600)
        >>> await sessions.save("abc123", {"user_id": 42, "roles": ["admin"]})
        True
        >>> await sessions.load("abc123")
        {'user_id': 42, 'roles': ['admin']}
    """

    def __init__(
        self,
        store: StoreClient,
        *,
        default_ttl: int = 3600,
        key_prefix: str = SESSION_PREFIX,
        metrics: GuardMetrics | None = None,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be > 0, got {default_ttl}")
        self._store = store
        self._default_ttl = default_ttl
        self._key_prefix = key_prefix
        self._metrics = metrics if metrics is not None else GuardMetrics()

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    def key(self, session_id: str) -> str:
        """Return the store key for a session id."""
        return namespaced(self._key_prefix, session_id)

    async def save(
        self, session_id: str, document: dict[str, Any], ttl_seconds: int | None = None
    ) -> bool:
        """Store a session document, replacing any previous one.

        Args:
            session_id: Session identifier
            document: JSON-serializable mapping
            ttl_seconds: Lifetime in seconds (default: the store default)

        Returns:
            True if written, False if the store was unavailable

        Raises:
            ValueError: If ttl_seconds is not positive
            SerializationError: If document is not JSON serializable
        """
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        if ttl <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl}")

        try:
            payload = json.dumps(document, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Session document is not serializable: {e}") from e

        key = self.key(session_id)
        try:
            await self._store.set(key, payload, ttl_seconds=ttl)
        except StoreUnavailableError as e:
            self._on_store_error("save", key, e)
            return False

        logger.debug("Saved session '%s' (ttl=%ds)", key, ttl)
        return True

    async def load(self, session_id: str) -> dict[str, Any] | None:
        """Return the session document, or None if absent, expired or unreadable."""
        key = self.key(session_id)
        try:
            raw = await self._store.get(key)
        except StoreUnavailableError as e:
            self._on_store_error("load", key, e)
            return None

        if raw is None:
            return None

        try:
            document = json.loads(raw)
        except (UnicodeDecodeError, ValueError):
            logger.warning("Malformed session document under '%s', treating as absent", key)
            return None
        if not isinstance(document, dict):
            logger.warning("Session under '%s' is not a JSON object, treating as absent", key)
            return None
        return document

    async def invalidate(self, session_id: str) -> bool:
        """Delete a session.

        Returns:
            True if a session was deleted, False if absent or the store was unavailable
        """
        key = self.key(session_id)
        try:
            deleted = await self._store.delete(key)
        except StoreUnavailableError as e:
            self._on_store_error("invalidate", key, e)
            return False

        logger.debug("Invalidated session '%s' (deleted=%d)", key, deleted)
        return deleted > 0

    async def exists(self, session_id: str) -> bool:
        key = self.key(session_id)
        try:
            return await self._store.exists(key)
        except StoreUnavailableError as e:
            self._on_store_error("exists", key, e)
            return False

    def _on_store_error(self, operation: str, key: str, error: Exception) -> None:
        self._metrics.record_store_error()
        record_store_error("session")
        logger.warning("Session %s failed for '%s': %s", operation, key, error)
