"""
Cross-instance pub/sub on top of CacheManager.

Every ingesting instance publishes updates to Redis channels; every
instance's listener receives them and dispatches to local handlers, which
push to that instance's observers. With Redis down, ``publish()`` hands
the message straight to local handlers so a single instance keeps serving
its own observers.

Includes exponential backoff with jitter for listener reconnection.

Usage:
    pubsub = PubSubManager(cache)
    unsubscribe = pubsub.on(Channels.DEVICE_UPDATE, handle_device_update)
    await pubsub.start()
    await pubsub.publish(Channels.DEVICE_UPDATE, {"deviceId": "core-sw1", ...})
"""

import asyncio
import inspect
import json
import logging
import random
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from redis.exceptions import RedisError

from config.redis_client import Channels
from core.cache_manager import CacheManager, ConnectionState

logger = logging.getLogger(__name__)

_RECONNECT_JITTER = 0.25  # ±25%

Handler = Callable[[Any], Union[None, Awaitable[None]]]


def backoff_with_jitter(attempt: int, base: float = 1.0, maximum: float = 30.0) -> float:
    """Calculate exponential backoff with jitter."""
    delay = min(base * (2 ** attempt), maximum)
    jitter = delay * _RECONNECT_JITTER * (2 * random.random() - 1)
    return delay + jitter


class SubscriptionClosed(ConnectionError):
    """The server ended the subscription without an error."""


class PubSubManager:
    """Channel handler registry fed by a Redis subscriber connection."""

    def __init__(
        self,
        cache: CacheManager,
        channels: Iterable[str] = Channels.ALL,
        reconnect_base: float = 1.0,
        reconnect_max: float = 30.0,
        poll_interval: float = 1.0,
    ):
        self.cache = cache
        self.channels = tuple(channels)
        self.reconnect_base = reconnect_base
        self.reconnect_max = reconnect_max
        self.poll_interval = poll_interval

        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._task: Optional[asyncio.Task] = None
        self._subscribed = False
        self._stats = {
            "received": 0,
            "published": 0,
            "local_dispatches": 0,
            "handler_errors": 0,
            "invalid_messages": 0,
            "reconnects": 0,
        }

    # =========================================================================
    # Handler registry
    # =========================================================================

    def on(self, channel: str, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a callable that removes it again."""
        self._handlers[channel].append(handler)

        def unsubscribe():
            handlers = self._handlers.get(channel, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def dispatch(self, channel: str, message: Any):
        """Deliver a decoded message to every handler of ``channel``."""
        for handler in list(self._handlers.get(channel, ())):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._stats["handler_errors"] += 1
                logger.error(f"Pub/sub handler for {channel} failed: {e}", exc_info=True)

    # =========================================================================
    # Publish
    # =========================================================================

    async def publish(self, channel: str, message: Any) -> bool:
        """
        Publish through Redis. Returns True if Redis accepted it.

        When Redis is unavailable the message is dispatched to local
        handlers instead and False is returned.
        """
        if await self.cache.publish(channel, message):
            self._stats["published"] += 1
            return True

        self._stats["local_dispatches"] += 1
        await self.dispatch(channel, message)
        return False

    # =========================================================================
    # Listener
    # =========================================================================

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    async def start(self):
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._listen_loop(), name="pubsub-listener")
        logger.info(f"Pub/sub listener started for {len(self.channels)} channels")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Pub/sub listener stopped")

    async def _listen_loop(self):
        attempt = 0

        while True:
            if self.cache.state == ConnectionState.FAILED:
                logger.error("Redis connection failed permanently, pub/sub listener exiting")
                return

            pubsub = self.cache.create_pubsub()
            if pubsub is None:
                await asyncio.sleep(backoff_with_jitter(attempt, self.reconnect_base, self.reconnect_max))
                attempt = min(attempt + 1, 10)
                continue

            try:
                await pubsub.subscribe(*self.channels)
                self._subscribed = True
                logger.info(f"Pub/sub subscribed to {', '.join(self.channels)}")
                attempt = 0

                while True:
                    # An explicit read timeout keeps an idle subscription from
                    # tripping the client socket_timeout
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self.poll_interval
                    )
                    if message is None:
                        if not pubsub.subscribed:
                            raise SubscriptionClosed("subscription closed by server")
                        continue
                    if message.get("type") != "message":
                        continue
                    await self._handle_message(message)

            except (RedisError, OSError) as e:
                self._subscribed = False
                self._stats["reconnects"] += 1
                delay = backoff_with_jitter(attempt, self.reconnect_base, self.reconnect_max)
                logger.warning(
                    f"Pub/sub disconnected: {e}. "
                    f"Reconnecting in {delay:.1f}s (attempt {attempt + 1})"
                )
                await asyncio.sleep(delay)
                attempt = min(attempt + 1, 10)

            finally:
                self._subscribed = False
                await self._close(pubsub)

    async def _handle_message(self, message: dict):
        self._stats["received"] += 1
        channel = message.get("channel")
        try:
            data = json.loads(message["data"])
        except (KeyError, TypeError, ValueError) as e:
            self._stats["invalid_messages"] += 1
            logger.warning(f"Invalid pub/sub message on {channel}: {e}")
            return
        await self.dispatch(channel, data)

    @staticmethod
    async def _close(pubsub):
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing pub/sub connection: {e}")

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "subscribed": self._subscribed,
            "handlers": {channel: len(h) for channel, h in self._handlers.items() if h},
        }
