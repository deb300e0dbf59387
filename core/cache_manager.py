"""
Redis cache and publisher with an explicit connection state machine.

    DISCONNECTED -> CONNECTING -> READY
    READY -> RECONNECTING -> READY | FAILED

Every cache operation degrades to a neutral value (None / False / [] / {})
instead of raising, so callers never need their own try/except around the
cache. A transport error while READY moves the manager to RECONNECTING
and starts a backoff task:

    delay(attempt) = min(attempt * base_delay, max_delay)

After ``max_reconnect_attempts`` failed attempts the manager is FAILED and
stays unavailable until the process restarts.

Usage:
    cache = CacheManager(settings.redis.redis_url)
    await cache.connect()
    await cache.set("device:status:core-sw1", {"status": "up"}, ttl=3600)
    data = await cache.get("device:status:core-sw1")
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from core.timestamps import isonow

logger = logging.getLogger(__name__)

# Errors that mean the connection itself is gone, not just a bad command
_TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionStateChange:
    """Notification delivered to ``on_state_change`` on every transition."""
    previous: ConnectionState
    current: ConnectionState
    reason: str = ""
    attempt: int = 0
    timestamp: str = field(default_factory=isonow)


class CacheManager:
    """Async Redis client wrapper that never raises from cache operations."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        password: Optional[str] = None,
        socket_timeout: float = 5.0,
        max_reconnect_attempts: int = 10,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        on_state_change: Optional[Callable[[ConnectionStateChange], Any]] = None,
        client_factory: Optional[Callable[[], "redis.Redis"]] = None,
    ):
        self.redis_url = redis_url
        self._password = password
        self._socket_timeout = socket_timeout
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.on_state_change = on_state_change
        self._client_factory = client_factory or self._default_client

        self._client: Optional[redis.Redis] = None
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._attempts = 0
        self._stats = {"errors": 0, "hits": 0, "misses": 0, "publishes": 0}

    def _default_client(self) -> "redis.Redis":
        # Retries are off so commands fail fast while the server is down;
        # reconnection is handled by the state machine instead
        return redis.from_url(
            self.redis_url,
            password=self._password,
            decode_responses=True,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
            retry=Retry(NoBackoff(), 0),
        )

    # =========================================================================
    # State machine
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def client(self) -> Optional["redis.Redis"]:
        return self._client

    def is_available(self) -> bool:
        return self._state == ConnectionState.READY

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number ``attempt`` (1-based)."""
        return min(attempt * self.reconnect_base_delay, self.reconnect_max_delay)

    def _set_state(self, new_state: ConnectionState, reason: str = ""):
        if new_state == self._state:
            return
        change = ConnectionStateChange(self._state, new_state, reason, self._attempts)
        self._state = new_state

        message = f"Redis {change.previous.value} -> {new_state.value}"
        if reason:
            message += f": {reason}"
        if new_state == ConnectionState.FAILED:
            logger.error(message)
        elif new_state == ConnectionState.RECONNECTING:
            logger.warning(message)
        else:
            logger.info(message)

        if self.on_state_change is not None:
            try:
                self.on_state_change(change)
            except Exception as e:
                logger.error(f"Redis state change listener failed: {e}", exc_info=True)

    async def connect(self) -> bool:
        """Connect and PING. On failure, start reconnecting in the background.

        Concurrent callers are serialized; a caller that waited on an
        in-flight connect gets its outcome instead of opening a second client.
        """
        async with self._connect_lock:
            if self._state == ConnectionState.READY:
                return True
            if self._state in (ConnectionState.RECONNECTING, ConnectionState.FAILED):
                return False

            self._set_state(ConnectionState.CONNECTING)
            error = await self._try_connect()
            if error is None:
                return True

            self._begin_reconnect(error)
            return False

    async def _try_connect(self) -> Optional[str]:
        """Open a fresh client and PING it. Returns an error string on failure."""
        await self._close_client()
        client = self._client_factory()
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            try:
                await client.aclose()
            except (RedisError, OSError):
                logger.debug("Ignoring error while closing failed Redis client")
            return str(e) or e.__class__.__name__

        self._client = client
        self._attempts = 0
        self._set_state(ConnectionState.READY, f"connected to {self.redis_url}")
        return None

    def _begin_reconnect(self, reason: str):
        if self._state == ConnectionState.FAILED:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._set_state(ConnectionState.RECONNECTING, reason)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name="redis-reconnect")

    async def _reconnect_loop(self):
        last_error = ""
        while self._attempts < self.max_reconnect_attempts:
            self._attempts += 1
            delay = self.reconnect_delay(self._attempts)
            logger.info(
                f"Redis reconnect attempt {self._attempts}/{self.max_reconnect_attempts} in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            error = await self._try_connect()
            if error is None:
                return
            last_error = error
            logger.warning(f"Redis reconnect attempt {self._attempts} failed: {error}")

        self._set_state(
            ConnectionState.FAILED,
            f"giving up after {self.max_reconnect_attempts} attempts ({last_error})",
        )

    def _on_error(self, operation: str, key: str, error: Exception):
        self._stats["errors"] += 1
        logger.warning(f"Cache {operation} error for {key}: {error}")
        if isinstance(error, _TRANSPORT_ERRORS) and self._state == ConnectionState.READY:
            self._begin_reconnect(f"{operation} failed: {error}")

    async def _close_client(self):
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            await client.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing Redis client: {e}")

    async def disconnect(self):
        """Cancel any reconnect loop and close the client."""
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        await self._close_client()
        self._set_state(ConnectionState.DISCONNECTED, "shutdown")

    # =========================================================================
    # Cache operations
    # =========================================================================

    async def get(self, key: str) -> Any:
        if not self.is_available():
            return None
        try:
            raw = await self._client.get(key)
            if raw is None:
                self._stats["misses"] += 1
                return None
            self._stats["hits"] += 1
            return json.loads(raw)
        except (RedisError, OSError, ValueError) as e:
            self._on_error("get", key, e)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.is_available():
            return False
        try:
            await self._client.set(key, json.dumps(value), ex=ttl)
            return True
        except (RedisError, OSError, TypeError, ValueError) as e:
            self._on_error("set", key, e)
            return False

    async def delete(self, key: str) -> bool:
        if not self.is_available():
            return False
        try:
            return bool(await self._client.delete(key))
        except (RedisError, OSError) as e:
            self._on_error("delete", key, e)
            return False

    async def mget(self, keys: List[str]) -> Dict[str, Any]:
        """Values for the keys that exist, decoded. Missing keys are omitted."""
        if not keys or not self.is_available():
            return {}
        try:
            values = await self._client.mget(keys)
            return {k: json.loads(v) for k, v in zip(keys, values) if v is not None}
        except (RedisError, OSError, ValueError) as e:
            self._on_error("mget", f"{len(keys)} keys", e)
            return {}

    async def mset(self, mapping: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        if not mapping or not self.is_available():
            return False
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for key, value in mapping.items():
                    pipe.set(key, json.dumps(value), ex=ttl)
                await pipe.execute()
            return True
        except (RedisError, OSError, TypeError, ValueError) as e:
            self._on_error("mset", f"{len(mapping)} keys", e)
            return False

    async def keys(self, pattern: str) -> List[str]:
        if not self.is_available():
            return []
        try:
            return [key async for key in self._client.scan_iter(match=pattern)]
        except (RedisError, OSError) as e:
            self._on_error("keys", pattern, e)
            return []

    async def publish(self, channel: str, message: Any) -> bool:
        if not self.is_available():
            return False
        try:
            await self._client.publish(channel, json.dumps(message))
            self._stats["publishes"] += 1
            return True
        except (RedisError, OSError, TypeError, ValueError) as e:
            self._on_error("publish", channel, e)
            return False

    def create_pubsub(self):
        """A fresh PubSub bound to the current client, or None when unavailable."""
        if not self.is_available() or self._client is None:
            return None
        return self._client.pubsub(ignore_subscribe_messages=True)

    # =========================================================================
    # Health
    # =========================================================================

    async def health_check(self) -> dict:
        if not self.is_available():
            return {"healthy": False, "status": self._state.value, "latency_ms": None,
                    "error": "Redis not connected"}
        started = time.monotonic()
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            self._on_error("ping", "health", e)
            return {"healthy": False, "status": self._state.value, "latency_ms": None, "error": str(e)}
        return {
            "healthy": True,
            "status": self._state.value,
            "latency_ms": round((time.monotonic() - started) * 1000, 2),
        }

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "state": self._state.value,
            "reconnect_attempts": self._attempts,
        }
