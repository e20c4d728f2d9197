"""Redis-backed store client.

This module implements the kv-guard store client on top of ``redis.asyncio``.
Ordinary commands go through a connection pool; subscription listening uses a
second, dedicated connection so that a streaming subscribe never starves
get/set traffic.

Every command is bounded by ``operation_timeout`` on top of the socket
timeouts, and every driver failure is translated into
``StoreUnavailableError`` so the components above can apply their fail-open
policies.

The counter primitive is a Lua script, which makes the read-compare-increment
sequence of the rate limiter a single atomic round-trip.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable
from typing import TypeVar

from redis import asyncio as redis_asyncio
from redis.asyncio import ConnectionPool
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from kvguard.contrib.prometheus.metrics import record_store_operation
from kvguard.core import RawMessageHandler, StoreClient
from kvguard.exceptions import StoreNotConnectedError, StoreTimeoutError, StoreUnavailableError
from kvguard.schemas import CounterUpdate, RedisStoreConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# =============================================================================
# LUA SCRIPTS
# =============================================================================

# Atomic increment with ceiling and set-if-absent expiry
# Returns: [applied (0/1), value]
# Args: ttl (seconds), ceiling (or -1 if disabled)
#
# A non-numeric value under the key is treated as absent and replaced.
# The expiry is only applied when the key has none, so the window is
# anchored at the first increment and never re-armed.
INCREMENT_SCRIPT = """
local key = KEYS[1]
local ttl = tonumber(ARGV[1])
local ceiling = tonumber(ARGV[2])

local raw = redis.call('GET', key)
local current = tonumber(raw)
if raw and not current then
    redis.call('DEL', key)
end
if not current then
    current = 0
end

if ceiling >= 0 and current >= ceiling then
    return {0, current}
end

local value = redis.call('INCR', key)
if redis.call('TTL', key) < 0 then
    redis.call('EXPIRE', key, ttl)
end

return {1, value}
"""


class RedisStore(StoreClient):
    """Store client backed by Redis.

    Example:
        >>> from kvguard.stores.redis import RedisStore
        >>> store = RedisStore("redis://localhost:6379/0", operation_timeout=1.0)
        >>> await store.connect()
        >>> await store.set("cache:GET /items", b"[]", ttl_seconds=300)
        >>> await store.close()
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379",
        *,
        db: int = 0,
        password: str | None = None,
        pool_max_size: int = 10,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        operation_timeout: float = 2.0,
        listener_poll_interval: float = 1.0,
    ) -> None:
        """Initialize the Redis store client.

        Args:
            url: Redis connection URL
            db: Redis database number (0-15)
            password: Optional Redis password
            pool_max_size: Maximum connections in the command pool
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
            operation_timeout: Upper bound in seconds for every store operation
            listener_poll_interval: Seconds the subscription listener waits
                for a message before checking again

        Raises:
            ValueError: If a timeout or the pool size is not positive
        """
        if operation_timeout <= 0:
            raise ValueError(f"operation_timeout must be > 0, got: {operation_timeout}")
        if pool_max_size <= 0:
            raise ValueError(f"pool_max_size must be > 0, got: {pool_max_size}")

        self._url = url
        self._db = db
        self._password = password
        self._pool_max_size = pool_max_size
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._operation_timeout = operation_timeout
        self._listener_poll_interval = listener_poll_interval

        self._pool: ConnectionPool | None = None
        self._client: redis_asyncio.Redis | None = None
        self._subscriber_pool: ConnectionPool | None = None
        self._subscriber: redis_asyncio.Redis | None = None
        self._pubsub: PubSub | None = None
        self._listener: asyncio.Task | None = None
        self._handlers: dict[str, RawMessageHandler] = {}
        self._increment_script = None

    @classmethod
    def from_config(cls, config: RedisStoreConfig) -> "RedisStore":
        """Create a Redis store client from configuration.

        Args:
            config: Redis store configuration

        Returns:
            Configured, not yet connected RedisStore
        """
        return cls(
            config.url,
            db=config.db,
            password=config.password,
            pool_max_size=config.pool_max_size,
            socket_timeout=config.socket_timeout,
            socket_connect_timeout=config.socket_connect_timeout,
            operation_timeout=config.operation_timeout,
        )

    @property
    def engine(self) -> str:
        """Return the engine name."""
        return "redis"

    @property
    def is_connected(self) -> bool:
        """Check if the client is connected."""
        return self._client is not None

    @property
    def operation_timeout(self) -> float:
        """Return the per-operation timeout in seconds."""
        return self._operation_timeout

    async def connect(self) -> None:
        """Create the command and subscriber connection pools.

        This operation is idempotent - can be called multiple times.

        The pools are kept when the initial ping fails: connections are
        opened lazily per command, so the client recovers on its own once
        Redis answers again. Call close() to release them.

        Raises:
            StoreUnavailableError: If Redis does not answer the initial ping
        """
        if self._client is not None:
            return

        self._pool = ConnectionPool.from_url(
            self._url,
            db=self._db,
            password=self._password,
            max_connections=self._pool_max_size,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_connect_timeout,
            decode_responses=False,
        )
        self._client = redis_asyncio.Redis(connection_pool=self._pool)

        # Dedicated connection for the subscription listener; reads block on
        # get_message(timeout=...) so no socket timeout is set here
        self._subscriber_pool = ConnectionPool.from_url(
            self._url,
            db=self._db,
            password=self._password,
            max_connections=1,
            socket_connect_timeout=self._socket_connect_timeout,
            decode_responses=False,
        )
        self._subscriber = redis_asyncio.Redis(connection_pool=self._subscriber_pool)

        self._increment_script = self._client.register_script(INCREMENT_SCRIPT)

        try:
            await self._bounded("ping", self._client.ping())
        except StoreUnavailableError as e:
            logger.error(
                "Redis at %s did not answer the initial ping, commands will retry: %s",
                self._url,
                e,
            )
            raise

        logger.info(
            "Connected to Redis (url=%s, db=%d, pool_max=%d, operation_timeout=%.2fs)",
            self._url,
            self._db,
            self._pool_max_size,
            self._operation_timeout,
        )

    async def close(self) -> None:
        """Stop the listener and close both connection pools."""
        await self._stop_listener()
        self._handlers.clear()

        for name, client_attr, pool_attr in (
            ("client", "_client", "_pool"),
            ("subscriber", "_subscriber", "_subscriber_pool"),
        ):
            client = getattr(self, client_attr)
            pool = getattr(self, pool_attr)
            if client is not None:
                try:
                    await client.aclose()
                except (OSError, ConnectionError, RedisError, RuntimeError) as e:
                    logger.warning("Error closing Redis %s: %s", name, e)
                finally:
                    setattr(self, client_attr, None)
            if pool is not None:
                try:
                    await pool.disconnect()
                except (OSError, ConnectionError, RedisError, RuntimeError) as e:
                    logger.warning("Error closing Redis %s pool: %s", name, e)
                finally:
                    setattr(self, pool_attr, None)

        self._increment_script = None
        logger.info("Closed Redis connections (url=%s)", self._url)

    def _require_client(self, operation: str) -> redis_asyncio.Redis:
        if self._client is None:
            raise StoreNotConnectedError(operation)
        return self._client

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a Redis call under the operation timeout, translating failures."""
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(awaitable, timeout=self._operation_timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as e:
            raise StoreTimeoutError(operation, self._operation_timeout) from e
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(
                f"Redis operation '{operation}' failed: {e}",
                operation=operation,
            ) from e
        finally:
            record_store_operation(operation, time.perf_counter() - started)

    async def get(self, key: str) -> bytes | None:
        client = self._require_client("get")
        return await self._bounded("get", client.get(key))

    async def set(self, key: str, value: bytes | str, ttl_seconds: int | None = None) -> None:
        client = self._require_client("set")
        if ttl_seconds is not None:
            await self._bounded("set", client.set(key, value, ex=ttl_seconds))
        else:
            await self._bounded("set", client.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = self._require_client("delete")
        return int(await self._bounded("delete", client.delete(*keys)))

    async def exists(self, key: str) -> bool:
        client = self._require_client("exists")
        return int(await self._bounded("exists", client.exists(key))) > 0

    async def ttl(self, key: str) -> float | None:
        client = self._require_client("ttl")
        remaining_ms = int(await self._bounded("ttl", client.pttl(key)))
        # -2: key absent, -1: key without expiry
        if remaining_ms < 0:
            return None
        return remaining_ms / 1000.0

    async def increment(
        self,
        key: str,
        *,
        ttl_seconds: int,
        ceiling: int | None = None,
    ) -> CounterUpdate:
        self._require_client("increment")
        result = await self._bounded(
            "increment",
            self._increment_script(
                keys=[key],
                args=[ttl_seconds, ceiling if ceiling is not None else -1],
            ),
        )
        return CounterUpdate(applied=int(result[0]) == 1, value=int(result[1]))

    async def scan_iter(self, pattern: str, *, batch_size: int = 500) -> AsyncIterator[str]:
        client = self._require_client("scan")
        cursor = 0
        while True:
            cursor, keys = await self._bounded(
                "scan", client.scan(cursor, match=pattern, count=batch_size)
            )
            for key in keys:
                yield key.decode("utf-8") if isinstance(key, bytes) else key
            if cursor == 0:
                break

    async def publish(self, channel: str, message: bytes | str) -> int:
        client = self._require_client("publish")
        return int(await self._bounded("publish", client.publish(channel, message)))

    async def subscribe_raw(self, channel: str, on_message: RawMessageHandler) -> None:
        self._require_client("subscribe")
        if self._pubsub is None:
            self._pubsub = self._subscriber.pubsub(ignore_subscribe_messages=True)

        is_new = channel not in self._handlers
        self._handlers[channel] = on_message
        if is_new:
            try:
                await self._bounded("subscribe", self._pubsub.subscribe(channel))
            except StoreUnavailableError:
                self._handlers.pop(channel, None)
                raise

        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen(), name="kvguard-redis-listener")

        logger.debug("Subscribed transport listener to channel '%s'", channel)

    async def unsubscribe_raw(self, channel: str) -> None:
        if self._handlers.pop(channel, None) is None:
            return

        if self._pubsub is not None:
            try:
                await self._bounded("unsubscribe", self._pubsub.unsubscribe(channel))
            finally:
                if not self._handlers:
                    await self._stop_listener()

        logger.debug("Detached transport listener from channel '%s'", channel)

    async def ping(self) -> bool:
        client = self._require_client("ping")
        return bool(await self._bounded("ping", client.ping()))

    async def _listen(self) -> None:
        """Read messages from the dedicated connection and dispatch them per channel."""
        while True:
            pubsub = self._pubsub
            if pubsub is None:
                return
            try:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self._listener_poll_interval,
                )
            except (RedisError, OSError) as e:
                logger.warning("Redis subscription listener error, retrying: %s", e)
                await asyncio.sleep(self._listener_poll_interval)
                continue

            if message is None or message.get("type") != "message":
                continue

            channel = message["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode("utf-8")

            handler = self._handlers.get(channel)
            if handler is None:
                continue

            try:
                result = handler(message["data"])
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener for channel '%s' raised", channel)

    async def _stop_listener(self) -> None:
        """Cancel the listener task and release the subscriber connection."""
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except (OSError, ConnectionError, RedisError, RuntimeError) as e:
                logger.warning("Error closing Redis subscription: %s", e)
            finally:
                self._pubsub = None
