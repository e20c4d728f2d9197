"""Core abstractions and base types for kv-guard.

This module defines the generic store client interface that the rate limiter,
response cache, session store and notification channel are built on, plus the
in-process metrics they share. Implementations live in ``kvguard.stores``.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any

from kvguard.schemas import CounterUpdate

RawMessageHandler = Callable[[bytes], Awaitable[None] | None]


@dataclass
class GuardMetrics:
    """In-process observability counters shared by the guard components.

    Attributes:
        admitted: Requests admitted by the rate limiter
        rejected: Requests rejected by the rate limiter
        fail_open_admissions: Requests admitted because the store was unavailable
        cache_hits: Cache reads that found an entry
        cache_misses: Cache reads that found nothing (including degraded reads)
        cache_writes: Successful cache writes
        cache_write_failures: Cache writes swallowed after a store failure
        store_errors: Store failures observed by any component
        messages_published: Messages handed to the store for publication
        messages_delivered: Messages delivered to local handlers
        last_error_at: Timestamp of the last store failure
    """

    admitted: int = 0
    rejected: int = 0
    fail_open_admissions: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_writes: int = 0
    cache_write_failures: int = 0
    store_errors: int = 0
    messages_published: int = 0
    messages_delivered: int = 0
    last_error_at: float | None = None

    def record_admission(self, allowed: bool) -> None:
        """Record a rate limit decision."""
        if allowed:
            self.admitted += 1
        else:
            self.rejected += 1

    def record_fail_open(self) -> None:
        """Record an admission granted because the store failed."""
        self.fail_open_admissions += 1
        self.admitted += 1

    def record_cache_lookup(self, hit: bool) -> None:
        """Record a cache hit or miss."""
        if hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1

    def record_cache_write(self, success: bool) -> None:
        """Record a cache write outcome."""
        if success:
            self.cache_writes += 1
        else:
            self.cache_write_failures += 1

    def record_store_error(self) -> None:
        """Record a store failure."""
        self.store_errors += 1
        self.last_error_at = time.time()

    def record_publish(self) -> None:
        """Record a published message."""
        self.messages_published += 1

    def record_delivery(self) -> None:
        """Record a message delivered to a local handler."""
        self.messages_delivered += 1

    @property
    def cache_hit_ratio(self) -> float:
        """Fraction of cache lookups that were hits (0.0 when none)."""
        total = self.cache_hits + self.cache_misses
        return self.cache_hits / total if total else 0.0

    def as_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly snapshot."""
        snapshot = asdict(self)
        snapshot["cache_hit_ratio"] = round(self.cache_hit_ratio, 4)
        return snapshot


class StoreClient(ABC):
    """Abstract interface over the backing key-value store.

    The store client exclusively owns its network connection(s). Components
    built on top of it hold a shared, non-owning reference and must only touch
    their own key prefix.

    Every failure to reach the store (including timeouts) is raised as
    ``StoreUnavailableError`` (or a subclass), never as a driver-specific
    exception, so callers can apply a single fail-open policy.

    Example usage:
        >>> async with RedisStore("redis://localhost:6379") as store:
        ...     await store.set("greeting", b"hello", ttl_seconds=60)
        ...     await store.get("greeting")
        b'hello'
    """

    @property
    @abstractmethod
    def engine(self) -> str:
        """Engine name (e.g. "redis", "memory")."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the store client is connected."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection(s) to the store.

        It is idempotent - can be called multiple times without side effects.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """

    @abstractmethod
    async def close(self) -> None:
        """Close every connection owned by this client, including the subscriber."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the value stored under key, or None if absent."""

    @abstractmethod
    async def set(self, key: str, value: bytes | str, ttl_seconds: int | None = None) -> None:
        """Store value under key, with an optional expiry in seconds."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists."""

    @abstractmethod
    async def ttl(self, key: str) -> float | None:
        """Return remaining time-to-live in seconds.

        Returns None if the key is absent or has no expiry.
        """

    @abstractmethod
    async def increment(
        self,
        key: str,
        *,
        ttl_seconds: int,
        ceiling: int | None = None,
    ) -> CounterUpdate:
        """Atomically increment an integer counter.

        The expiry is applied only when the increment creates the key, so the
        window is anchored at the first increment. If ``ceiling`` is given and
        the current value is already >= ceiling, nothing is written.

        Args:
            key: Counter key
            ttl_seconds: Expiry applied on creation
            ceiling: Optional value at which increments stop

        Returns:
            CounterUpdate with whether the increment was applied and the value after it
        """

    @abstractmethod
    def scan_iter(self, pattern: str, *, batch_size: int = 500) -> AsyncIterator[str]:
        """Iterate over keys matching a glob-style pattern.

        Iteration is not a snapshot: keys written during the scan may or may
        not be returned.
        """

    @abstractmethod
    async def publish(self, channel: str, message: bytes | str) -> int:
        """Publish a message and return the number of receiving subscribers."""

    @abstractmethod
    async def subscribe_raw(self, channel: str, on_message: RawMessageHandler) -> None:
        """Register the single transport-level listener for a channel.

        Subscribing again to the same channel replaces the listener.
        """

    @abstractmethod
    async def unsubscribe_raw(self, channel: str) -> None:
        """Detach the transport-level listener for a channel."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the store answers.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """

    async def __aenter__(self) -> "StoreClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
