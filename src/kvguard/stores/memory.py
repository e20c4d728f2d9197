"""
In-memory store client using local process memory.

This store is useful for:
- Development and testing (no external dependencies)
- Single-process applications
- Simulating several processes in tests by sharing one ``MemoryBroker``

Note: This does NOT coordinate across multiple processes or containers.
Expiry is evaluated lazily against an injectable monotonic clock.
"""

import fnmatch
import inspect
import logging
import time
from collections.abc import AsyncIterator, Callable

from kvguard.core import RawMessageHandler, StoreClient
from kvguard.exceptions import StoreNotConnectedError
from kvguard.schemas import CounterUpdate, MemoryStoreConfig

logger = logging.getLogger(__name__)


class MemoryBroker:
    """In-process pub/sub broker shared by one or more MemoryStore instances.

    Each store registers at most one listener per channel, mirroring one
    subscribed connection per process in Redis, so ``publish`` returns the
    number of subscribed stores.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, dict[int, RawMessageHandler]] = {}

    def attach(self, channel: str, owner: int, handler: RawMessageHandler) -> None:
        self._listeners.setdefault(channel, {})[owner] = handler

    def detach(self, channel: str, owner: int) -> None:
        listeners = self._listeners.get(channel)
        if listeners is None:
            return
        listeners.pop(owner, None)
        if not listeners:
            del self._listeners[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._listeners.get(channel, {}))

    async def publish(self, channel: str, payload: bytes) -> int:
        listeners = list(self._listeners.get(channel, {}).values())
        for handler in listeners:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener for channel '%s' raised", channel)
        return len(listeners)


class MemoryStore(StoreClient):
    """Store client keeping keys in process memory.

    Attributes:
        _data: Mapping of key to (value, expires_at) where expires_at is a
            clock reading or None for keys without expiry
        _clock: Monotonic clock used for expiry
        _broker: Pub/sub broker (private to this store unless one is passed in)

    Example:
        >>> store = MemoryStore()
        >>> await store.connect()
        >>> await store.set("session:42", b"{}", ttl_seconds=60)
        >>> await store.exists("session:42")
        True
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        broker: MemoryBroker | None = None,
    ) -> None:
        """Initialize the memory store.

        Args:
            clock: Monotonic clock returning seconds; tests pass a fake to
                advance time without sleeping
            broker: Optional shared broker to deliver messages across stores
        """
        self._data: dict[str, tuple[bytes, float | None]] = {}
        self._clock = clock
        self._broker = broker if broker is not None else MemoryBroker()
        self._channels: set[str] = set()
        self._connected = False

    @classmethod
    def from_config(cls, config: MemoryStoreConfig) -> "MemoryStore":
        """Create a memory store from configuration."""
        if not isinstance(config, MemoryStoreConfig):
            raise ValueError(f"Expected MemoryStoreConfig, got {type(config)}")
        return cls()

    @property
    def engine(self) -> str:
        """Return the engine name."""
        return "memory"

    @property
    def is_connected(self) -> bool:
        """Check if the store is connected."""
        return self._connected

    async def connect(self) -> None:
        if not self._connected:
            self._connected = True
            logger.info("Memory store ready")

    async def close(self) -> None:
        for channel in list(self._channels):
            self._broker.detach(channel, id(self))
        self._channels.clear()
        self._connected = False

    def _require_connected(self, operation: str) -> None:
        if not self._connected:
            raise StoreNotConnectedError(operation)

    def _live(self, key: str) -> tuple[bytes, float | None] | None:
        """Return the entry for key, dropping it if it has expired."""
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    @staticmethod
    def _to_bytes(value: bytes | str) -> bytes:
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    async def get(self, key: str) -> bytes | None:
        self._require_connected("get")
        entry = self._live(key)
        return entry[0] if entry is not None else None

    async def set(self, key: str, value: bytes | str, ttl_seconds: int | None = None) -> None:
        self._require_connected("set")
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._data[key] = (self._to_bytes(value), expires_at)

    async def delete(self, *keys: str) -> int:
        self._require_connected("delete")
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                deleted += 1
        return deleted

    async def exists(self, key: str) -> bool:
        self._require_connected("exists")
        return self._live(key) is not None

    async def ttl(self, key: str) -> float | None:
        self._require_connected("ttl")
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return max(0.0, entry[1] - self._clock())

    async def increment(
        self,
        key: str,
        *,
        ttl_seconds: int,
        ceiling: int | None = None,
    ) -> CounterUpdate:
        self._require_connected("increment")
        entry = self._live(key)
        current = 0
        expires_at: float | None = None
        if entry is not None:
            try:
                current = int(entry[0])
                expires_at = entry[1]
            except ValueError:
                current = 0

        if ceiling is not None and current >= ceiling:
            return CounterUpdate(applied=False, value=current)

        if expires_at is None:
            expires_at = self._clock() + ttl_seconds
        value = current + 1
        self._data[key] = (str(value).encode("ascii"), expires_at)
        return CounterUpdate(applied=True, value=value)

    async def scan_iter(self, pattern: str, *, batch_size: int = 500) -> AsyncIterator[str]:
        self._require_connected("scan")
        for key in list(self._data):
            if self._live(key) is not None and fnmatch.fnmatchcase(key, pattern):
                yield key

    async def publish(self, channel: str, message: bytes | str) -> int:
        self._require_connected("publish")
        return await self._broker.publish(channel, self._to_bytes(message))

    async def subscribe_raw(self, channel: str, on_message: RawMessageHandler) -> None:
        self._require_connected("subscribe")
        self._broker.attach(channel, id(self), on_message)
        self._channels.add(channel)

    async def unsubscribe_raw(self, channel: str) -> None:
        self._broker.detach(channel, id(self))
        self._channels.discard(channel)

    async def ping(self) -> bool:
        self._require_connected("ping")
        return True

    async def flush(self) -> None:
        """Drop every key (for testing)."""
        self._data.clear()
