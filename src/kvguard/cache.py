"""Read-through response cache on top of the store client.

A cache entry ``cache:<key>`` holds a JSON envelope ``{"v": <value>}``, so a
cached ``None`` is distinguishable from a miss. Entries are written with a
single SET, so a reader sees either the previous or the new value, never a
partial one.

Failure policy:
- store unreachable on read: treated as a miss, the value is produced fresh
- store unreachable on write: logged and swallowed, the fresh value is returned
- malformed stored value: treated as a miss

Pattern invalidation scans and then deletes. It is not atomic: a concurrent
writer may repopulate a key between the scan and the delete.
"""

import functools
import hashlib
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from kvguard.contrib.prometheus.metrics import record_cache_lookup, record_fallback, record_store_error
from kvguard.core import GuardMetrics, StoreClient
from kvguard.exceptions import SerializationError, StoreUnavailableError
from kvguard.keys import CACHE_PREFIX, namespaced
from kvguard.schemas import CacheLookup

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

Producer = Callable[[], Awaitable[Any] | Any]

_MISS = CacheLookup(hit=False)

# Keys deleted per DEL command during pattern invalidation
_DELETE_BATCH_SIZE = 500


def _validate_ttl(ttl_seconds: int) -> None:
    if ttl_seconds <= 0:
        raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")


class ResponseCache:
    """Cache interceptor for units of work keyed by a deterministic cache key.

    Example:
        >>> cache = ResponseCache(store, default_ttl=300)
        >>> report = await cache.get_or_produce(
        ...     "GET /reports/daily",
        ...     build_daily_report,
        ... )
        >>> await cache.invalidate("GET /reports/daily")
    """

    def __init__(
        self,
        store: StoreClient,
        *,
        default_ttl: int = 300,
        key_prefix: str = CACHE_PREFIX,
        metrics: GuardMetrics | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            store: Store client shared with the other components
            default_ttl: TTL in seconds used when a call does not pass one
            key_prefix: Namespace for cache keys
            metrics: Optional shared in-process metrics

        Raises:
            ValueError: If default_ttl is not positive
        """
        _validate_ttl(default_ttl)
        self._store = store
        self._default_ttl = default_ttl
        self._key_prefix = key_prefix
        self._metrics = metrics if metrics is not None else GuardMetrics()

    @property
    def default_ttl(self) -> int:
        """Return the default TTL in seconds."""
        return self._default_ttl

    @property
    def metrics(self) -> GuardMetrics:
        """Return the in-process metrics."""
        return self._metrics

    def key(self, cache_key: str) -> str:
        """Return the namespaced store key for a cache key."""
        return namespaced(self._key_prefix, cache_key)

    async def lookup(self, cache_key: str) -> CacheLookup:
        """Read an entry.

        Returns:
            CacheLookup(hit=True, value=...) on a hit; a miss when the entry
            is absent, malformed, or the store is unavailable.
        """
        key = self.key(cache_key)
        try:
            raw = await self._store.get(key)
        except StoreUnavailableError as e:
            self._metrics.record_store_error()
            record_store_error("cache")
            record_fallback("cache")
            logger.warning("Cache read failed for '%s', treating as miss: %s", key, e)
            raw = None

        result = self._decode(key, raw) if raw is not None else _MISS
        self._metrics.record_cache_lookup(result.hit)
        record_cache_lookup("hit" if result.hit else "miss")
        logger.debug("Cache %s for '%s'", "hit" if result.hit else "miss", key)
        return result

    async def put(self, cache_key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Write an entry.

        Returns:
            True if written, False if the store was unavailable

        Raises:
            SerializationError: If value is not JSON serializable
            ValueError: If ttl_seconds is not positive
        """
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        _validate_ttl(ttl)
        payload = self._encode(value)
        key = self.key(cache_key)

        try:
            await self._store.set(key, payload, ttl_seconds=ttl)
        except StoreUnavailableError as e:
            self._metrics.record_store_error()
            self._metrics.record_cache_write(False)
            record_store_error("cache")
            logger.warning("Cache write failed for '%s', continuing without caching: %s", key, e)
            return False

        self._metrics.record_cache_write(True)
        logger.debug("Cached '%s' (ttl=%ds, %d bytes)", key, ttl, len(payload))
        return True

    async def get_or_produce(
        self,
        cache_key: str,
        produce: Producer,
        ttl_seconds: int | None = None,
    ) -> Any:
        """Return the cached value, or produce, store and return a fresh one.

        ``produce`` is never invoked on a hit. On a miss it is invoked once;
        if it raises, nothing is cached and the exception propagates. The
        write happens once the value is ready and never fails the call.

        Args:
            cache_key: Deterministic key for the unit of work
            produce: Zero-argument callable, sync or async
            ttl_seconds: TTL for a fresh entry (default: the cache default)
        """
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        _validate_ttl(ttl)

        cached_result = await self.lookup(cache_key)
        if cached_result.hit:
            return cached_result.value

        value = produce()
        if inspect.isawaitable(value):
            value = await value

        try:
            await self.put(cache_key, value, ttl)
        except SerializationError as e:
            logger.warning("Produced value for '%s' is not cacheable: %s", cache_key, e)

        return value

    async def invalidate(self, cache_key: str) -> int:
        """Delete one entry.

        Returns:
            Number of entries deleted (0 if absent or the store was unavailable)
        """
        key = self.key(cache_key)
        try:
            deleted = await self._store.delete(key)
        except StoreUnavailableError as e:
            self._metrics.record_store_error()
            record_store_error("cache")
            logger.warning("Cache invalidation failed for '%s': %s", key, e)
            return 0

        logger.debug("Invalidated '%s' (deleted=%d)", key, deleted)
        return deleted

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete every entry whose cache key matches a glob-style pattern.

        The scan and the deletes are separate operations; entries written
        concurrently may survive or be recreated right after.

        Args:
            pattern: Pattern over cache keys, e.g. "GET /items*"

        Returns:
            Number of entries deleted before the scan completed or failed
        """
        match = self.key(pattern)
        deleted = 0
        batch: list[str] = []
        try:
            async for key in self._store.scan_iter(match):
                batch.append(key)
                if len(batch) >= _DELETE_BATCH_SIZE:
                    deleted += await self._store.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._store.delete(*batch)
        except StoreUnavailableError as e:
            self._metrics.record_store_error()
            record_store_error("cache")
            logger.warning(
                "Pattern invalidation for '%s' stopped after %d keys: %s", match, deleted, e
            )
            return deleted

        logger.info("Invalidated %d cache entries matching '%s'", deleted, match)
        return deleted

    @staticmethod
    def _encode(value: Any) -> bytes:
        try:
            return json.dumps({"v": value}, ensure_ascii=False, separators=(",", ":")).encode(
                "utf-8"
            )
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Value of type {type(value).__name__} is not cacheable: {e}") from e

    @staticmethod
    def _decode(key: str, raw: bytes) -> CacheLookup:
        try:
            envelope = json.loads(raw)
        except (UnicodeDecodeError, ValueError):
            logger.warning("Malformed cache entry under '%s', treating as miss", key)
            return _MISS
        if not isinstance(envelope, dict) or "v" not in envelope:
            logger.warning("Unexpected cache entry layout under '%s', treating as miss", key)
            return _MISS
        return CacheLookup(hit=True, value=envelope["v"])


def _default_key_builder(func: Callable[..., Any], args: tuple, kwargs: dict) -> str:
    digest = hashlib.sha256(
        repr((args, sorted(kwargs.items()))).encode("utf-8")
    ).hexdigest()[:16]
    return f"fn:{func.__module__}.{func.__qualname__}:{digest}"


def cached(
    cache: ResponseCache,
    *,
    ttl_seconds: int | None = None,
    key_builder: Callable[..., str] | None = None,
) -> Callable[[F], F]:
    """Decorator caching the result of an async function.

    Args:
        cache: Cache to read from and write to
        ttl_seconds: TTL for fresh entries (default: the cache default)
        key_builder: Callable receiving the function arguments and returning
            the cache key. Defaults to the qualified function name plus a
            digest of the arguments' repr.

    Raises:
        TypeError: If applied to a non-async function
        ValueError: If ttl_seconds is not positive

    Example:
        >>> @cached(cache, ttl_seconds=60, key_builder=lambda user_id: f"profile:{user_id}")
        ... async def load_profile(user_id: str) -> dict:
        ...     return await db.fetch_profile(user_id)
    """
    if ttl_seconds is not None:
        _validate_ttl(ttl_seconds)

    def decorator(func: F) -> F:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(
                f"@cached can only be applied to async functions, "
                f"but {func.__name__} is not async"
            )

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if key_builder is not None:
                cache_key = key_builder(*args, **kwargs)
            else:
                cache_key = _default_key_builder(func, args, kwargs)
            return await cache.get_or_produce(
                cache_key, lambda: func(*args, **kwargs), ttl_seconds
            )

        return wrapper  # type: ignore[return-value]

    return decorator
