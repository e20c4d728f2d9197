"""Testing utilities for kv-guard.

This module provides helpers for testing code that uses kv-guard: a store
double that fails every operation, for exercising the fail-open paths, and
namespace resets for clean state between tests. The resets work with any
store engine.

Example:
    >>> from kvguard.testing import UnavailableStore, reset_guard
    >>>
    >>> # Every operation times out; the limiter admits, the cache produces
    >>> guard = KVGuard(UnavailableStore(timeout=True))
    >>> await guard.limiter.admit("api", "10.0.0.1", 1, 60)
    True
    >>>
    >>> # Clear rate_limit:, cache: and session: between tests
    >>> await reset_guard(guard)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from kvguard.core import RawMessageHandler, StoreClient
from kvguard.exceptions import StoreTimeoutError, StoreUnavailableError
from kvguard.keys import CACHE_PREFIX, RATE_LIMIT_PREFIX, SESSION_PREFIX
from kvguard.schemas import CounterUpdate

if TYPE_CHECKING:
    from kvguard.guard import KVGuard

logger = logging.getLogger(__name__)


class UnavailableStore(StoreClient):
    """Store client whose every operation fails as if the store were down.

    Attributes:
        calls: Names of the operations attempted, in order
    """

    def __init__(self, *, timeout: bool = False, timeout_seconds: float = 2.0) -> None:
        """Initialize the double.

        Args:
            timeout: Raise StoreTimeoutError instead of StoreUnavailableError
            timeout_seconds: Timeout reported in StoreTimeoutError
        """
        self._timeout = timeout
        self._timeout_seconds = timeout_seconds
        self.calls: list[str] = []

    def _fail(self, operation: str) -> StoreUnavailableError:
        self.calls.append(operation)
        if self._timeout:
            return StoreTimeoutError(operation, self._timeout_seconds)
        return StoreUnavailableError(f"Store unavailable during '{operation}'", operation=operation)

    @property
    def engine(self) -> str:
        return "unavailable"

    @property
    def is_connected(self) -> bool:
        return True

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def get(self, key: str) -> bytes | None:
        raise self._fail("get")

    async def set(self, key: str, value: bytes | str, ttl_seconds: int | None = None) -> None:
        raise self._fail("set")

    async def delete(self, *keys: str) -> int:
        raise self._fail("delete")

    async def exists(self, key: str) -> bool:
        raise self._fail("exists")

    async def ttl(self, key: str) -> float | None:
        raise self._fail("ttl")

    async def increment(
        self,
        key: str,
        *,
        ttl_seconds: int,
        ceiling: int | None = None,
    ) -> CounterUpdate:
        raise self._fail("increment")

    async def scan_iter(self, pattern: str, *, batch_size: int = 500) -> AsyncIterator[str]:
        raise self._fail("scan")
        yield  # pragma: no cover

    async def publish(self, channel: str, message: bytes | str) -> int:
        raise self._fail("publish")

    async def subscribe_raw(self, channel: str, on_message: RawMessageHandler) -> None:
        raise self._fail("subscribe")

    async def unsubscribe_raw(self, channel: str) -> None:
        raise self._fail("unsubscribe")

    async def ping(self) -> bool:
        raise self._fail("ping")


async def reset_namespace(store: StoreClient, prefix: str) -> int:
    """Delete every key under ``<prefix>:``.

    WARNING: This is destructive and should only be used in tests. It
    deletes keys written by other processes sharing the store.

    Args:
        store: Connected store client
        prefix: Namespace, e.g. "rate_limit"

    Returns:
        Number of keys deleted
    """
    keys = [key async for key in store.scan_iter(f"{prefix}:*")]
    if not keys:
        logger.debug("Namespace '%s' already empty", prefix)
        return 0

    deleted = await store.delete(*keys)
    logger.debug("Reset namespace '%s' (%d keys)", prefix, deleted)
    return deleted


async def reset_guard(guard: KVGuard) -> int:
    """Clear the rate limit, cache and session namespaces of a guard's store.

    Returns:
        Total number of keys deleted
    """
    total = 0
    for prefix in (RATE_LIMIT_PREFIX, CACHE_PREFIX, SESSION_PREFIX):
        total += await reset_namespace(guard.store, prefix)
    logger.info("Reset %d keys across kv-guard namespaces", total)
    return total
