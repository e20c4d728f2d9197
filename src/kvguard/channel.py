"""Best-effort publish/subscribe notifications.

Delivery is at-most-once: a message published while nobody is subscribed is
dropped, and nothing is replayed after a reconnect. Within one process,
every channel has a single transport listener on the store and an ordered
list of handlers; the listener invokes the handlers in subscription order.
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from kvguard.contrib.prometheus.metrics import record_store_error
from kvguard.core import GuardMetrics, StoreClient
from kvguard.exceptions import SerializationError, StoreUnavailableError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None] | None]


class NotificationChannel:
    """Fan-out of published messages to in-process handlers.

    Example:
        >>> channel = NotificationChannel(store)
        >>> async def on_update(message: str) -> None:
        ...     print("got", message)
        >>> await channel.subscribe("user_updates", on_update)
        >>> await channel.publish("user_updates", {"user_id": 42, "action": "login"})
        1
    """

    def __init__(self, store: StoreClient, *, metrics: GuardMetrics | None = None) -> None:
        self._store = store
        self._metrics = metrics if metrics is not None else GuardMetrics()
        self._handlers: dict[str, list[MessageHandler]] = {}
        # Serializes transport listener registration and removal
        self._lock = asyncio.Lock()

    @property
    def metrics(self) -> GuardMetrics:
        """Return the in-process metrics."""
        return self._metrics

    def channels(self) -> list[str]:
        """Return the channels with at least one handler."""
        return list(self._handlers)

    def handler_count(self, channel: str) -> int:
        return len(self._handlers.get(channel, []))

    async def publish(self, channel: str, message: Any) -> int:
        """Publish a message.

        ``str`` and ``bytes`` are sent as-is; any other value is JSON-encoded.

        Returns:
            Number of subscribers the store reports as having received the
            message; 0 when nobody listened or the store was unavailable

        Raises:
            SerializationError: If message is not JSON serializable
        """
        payload = self._encode(message)
        try:
            receivers = await self._store.publish(channel, payload)
        except StoreUnavailableError as e:
            self._metrics.record_store_error()
            record_store_error("channel")
            logger.warning("Publish to channel '%s' failed, message dropped: %s", channel, e)
            return 0

        self._metrics.record_publish()
        logger.debug("Published to channel '%s' (receivers=%d)", channel, receivers)
        return receivers

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        """Append a handler for a channel.

        The first handler for a channel registers the transport listener.

        Raises:
            StoreUnavailableError: If the listener cannot be registered
        """
        async with self._lock:
            handlers = self._handlers.get(channel)
            if handlers is None:
                await self._store.subscribe_raw(channel, self._dispatcher(channel))
                handlers = self._handlers[channel] = []
                logger.info("Subscribed to channel '%s'", channel)
            handlers.append(handler)

    async def unsubscribe(self, channel: str, handler: MessageHandler | None = None) -> None:
        """Remove one handler, or every handler when none is given.

        When the last handler goes, the transport listener is detached.

        Raises:
            StoreUnavailableError: If the listener cannot be detached
        """
        async with self._lock:
            handlers = self._handlers.get(channel)
            if handlers is None:
                return

            if handler is None:
                handlers.clear()
            else:
                try:
                    handlers.remove(handler)
                except ValueError:
                    logger.debug("Handler not subscribed to channel '%s'", channel)
                    return

            if not handlers:
                del self._handlers[channel]
                await self._store.unsubscribe_raw(channel)
                logger.info("Unsubscribed from channel '%s'", channel)

    async def close(self) -> None:
        """Drop every handler and detach every transport listener."""
        for channel in list(self._handlers):
            try:
                await self.unsubscribe(channel)
            except StoreUnavailableError as e:
                logger.warning("Could not detach listener for channel '%s': %s", channel, e)

    def _dispatcher(self, channel: str) -> Callable[[bytes], Awaitable[None]]:
        async def dispatch(payload: bytes) -> None:
            message = payload.decode("utf-8", errors="replace")
            # Copy so handlers can unsubscribe while being dispatched
            for handler in list(self._handlers.get(channel, [])):
                try:
                    result = handler(message)
                    if inspect.isawaitable(result):
                        await result
                    self._metrics.record_delivery()
                except Exception:
                    logger.exception("Handler for channel '%s' raised", channel)

        return dispatch

    @staticmethod
    def _encode(message: Any) -> bytes | str:
        if isinstance(message, (str, bytes)):
            return message
        try:
            return json.dumps(message, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Message is not serializable: {e}") from e
