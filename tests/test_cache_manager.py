"""Tests for CacheManager: neutral values, state machine and reconnect backoff."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from core.cache_manager import CacheManager, ConnectionState


def _unreachable_client():
    client = MagicMock()
    client.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
    client.aclose = AsyncMock()
    return client


class TestUnavailable:
    @pytest.mark.asyncio
    async def test_neutral_values_before_connect(self):
        cache = CacheManager()
        assert cache.state == ConnectionState.DISCONNECTED
        assert cache.is_available() is False
        assert await cache.get("k") is None
        assert await cache.set("k", {"a": 1}) is False
        assert await cache.delete("k") is False
        assert await cache.mget(["a", "b"]) == {}
        assert await cache.mset({"a": 1}) is False
        assert await cache.keys("*") == []
        assert await cache.publish("device:update", {}) is False
        assert cache.create_pubsub() is None

    @pytest.mark.asyncio
    async def test_health_check_reports_state(self):
        health = await CacheManager().health_check()
        assert health["healthy"] is False
        assert health["status"] == "disconnected"


class TestConnected:
    @pytest.mark.asyncio
    async def test_connect_reaches_ready(self, ready_cache, fake_redis):
        assert ready_cache.state == ConnectionState.READY
        assert ready_cache.is_available() is True
        fake_redis.ping.assert_awaited()

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, ready_cache, fake_redis):
        fake_redis.get.return_value = json.dumps({"status": "up"})
        assert await ready_cache.get("device:status:core-sw1") == {"status": "up"}
        assert ready_cache.get_stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_get_miss(self, ready_cache):
        assert await ready_cache.get("missing") is None
        assert ready_cache.get_stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_set_encodes_with_ttl(self, ready_cache, fake_redis):
        assert await ready_cache.set("k", {"a": 1}, ttl=60) is True
        fake_redis.set.assert_awaited_once_with("k", json.dumps({"a": 1}), ex=60)

    @pytest.mark.asyncio
    async def test_mget_omits_missing_keys(self, ready_cache, fake_redis):
        fake_redis.mget.return_value = [json.dumps(1), None, json.dumps({"x": 2})]
        assert await ready_cache.mget(["a", "b", "c"]) == {"a": 1, "c": {"x": 2}}

    @pytest.mark.asyncio
    async def test_mset_uses_pipeline(self, ready_cache, fake_redis):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, True])
        fake_redis.pipeline.return_value.__aenter__.return_value = pipe

        assert await ready_cache.mset({"a": 1, "b": 2}, ttl=30) is True
        assert pipe.set.call_count == 2
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_keys_scans(self, ready_cache, fake_redis):
        async def scan_iter(match=None):
            for key in ("interface:status:sw1:1", "interface:status:sw1:2"):
                yield key

        fake_redis.scan_iter = scan_iter
        assert await ready_cache.keys("interface:status:sw1:*") == [
            "interface:status:sw1:1",
            "interface:status:sw1:2",
        ]

    @pytest.mark.asyncio
    async def test_publish_encodes_json(self, ready_cache, fake_redis):
        assert await ready_cache.publish("device:update", {"deviceId": "sw1"}) is True
        fake_redis.publish.assert_awaited_once_with("device:update", json.dumps({"deviceId": "sw1"}))

    @pytest.mark.asyncio
    async def test_command_error_keeps_ready(self, ready_cache, fake_redis):
        fake_redis.get.side_effect = ResponseError("WRONGTYPE")
        assert await ready_cache.get("k") is None
        assert ready_cache.state == ConnectionState.READY
        assert ready_cache.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_health_check_measures_latency(self, ready_cache):
        health = await ready_cache.health_check()
        assert health["healthy"] is True
        assert health["latency_ms"] >= 0


class TestReconnect:
    def test_delay_formula(self):
        cache = CacheManager(reconnect_base_delay=1.0, reconnect_max_delay=30.0)
        assert [cache.reconnect_delay(n) for n in (1, 2, 5, 30, 31, 100)] == [1, 2, 5, 30, 30, 30]

    @pytest.mark.asyncio
    async def test_transport_error_triggers_reconnect(self, ready_cache, fake_redis):
        fake_redis.get.side_effect = RedisConnectionError("Connection reset by peer")

        assert await ready_cache.get("k") is None
        assert ready_cache.state == ConnectionState.RECONNECTING
        assert ready_cache.is_available() is False
        assert await ready_cache.set("k", 1) is False

        await asyncio.sleep(0.1)
        assert ready_cache.state == ConnectionState.READY

    @pytest.mark.asyncio
    async def test_failed_after_max_attempts(self):
        created = []

        def factory():
            client = _unreachable_client()
            created.append(client)
            return client

        changes = []
        cache = CacheManager(
            max_reconnect_attempts=3,
            reconnect_base_delay=0.001,
            reconnect_max_delay=0.01,
            on_state_change=changes.append,
            client_factory=factory,
        )

        assert await cache.connect() is False
        assert cache.state == ConnectionState.RECONNECTING

        await asyncio.wait_for(cache._reconnect_task, timeout=2)

        assert cache.state == ConnectionState.FAILED
        assert cache.get_stats()["reconnect_attempts"] == 3
        assert len(created) == 4
        assert [c.current for c in changes] == [
            ConnectionState.CONNECTING,
            ConnectionState.RECONNECTING,
            ConnectionState.FAILED,
        ]
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_state_change_notifications(self, fake_redis):
        changes = []
        cache = CacheManager(client_factory=lambda: fake_redis, on_state_change=changes.append)

        await cache.connect()
        await cache.disconnect()

        assert [(c.previous, c.current) for c in changes] == [
            (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
            (ConnectionState.CONNECTING, ConnectionState.READY),
            (ConnectionState.READY, ConnectionState.DISCONNECTED),
        ]
        assert all(c.timestamp for c in changes)

    @pytest.mark.asyncio
    async def test_listener_error_does_not_break_transition(self, fake_redis):
        cache = CacheManager(
            client_factory=lambda: fake_redis,
            on_state_change=MagicMock(side_effect=RuntimeError("listener bug")),
        )
        assert await cache.connect() is True
        assert cache.state == ConnectionState.READY

    @pytest.mark.asyncio
    async def test_concurrent_connect_opens_one_client(self, fake_redis):
        async def slow_ping():
            await asyncio.sleep(0.02)
            return True

        fake_redis.ping = AsyncMock(side_effect=slow_ping)
        created = []

        def factory():
            created.append(fake_redis)
            return fake_redis

        cache = CacheManager(client_factory=factory)
        results = await asyncio.gather(cache.connect(), cache.connect(), cache.connect())

        assert results == [True, True, True]
        assert len(created) == 1
        assert cache.state == ConnectionState.READY
        fake_redis.aclose.assert_not_awaited()
        await cache.disconnect()

    @pytest.mark.asyncio
    async def test_connect_after_failed_stays_unavailable(self):
        cache = CacheManager(max_reconnect_attempts=0, client_factory=_unreachable_client)
        await cache.connect()
        await asyncio.wait_for(cache._reconnect_task, timeout=1)
        assert cache.state == ConnectionState.FAILED

        assert await cache.connect() is False
        assert cache.state == ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_disconnect_cancels_reconnect(self):
        cache = CacheManager(reconnect_base_delay=10, client_factory=_unreachable_client)
        await cache.connect()
        assert cache.state == ConnectionState.RECONNECTING

        await cache.disconnect()

        assert cache.state == ConnectionState.DISCONNECTED
