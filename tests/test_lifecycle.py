"""Tests for service construction, startup/shutdown ordering and retention."""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.cache_manager import CacheManager, ConnectionState
from core.storage import TABLE_COLUMNS
from core.timestamps import epoch_ms
from monitor.lifecycle import (
    build_services,
    install_signal_handlers,
    prune_history,
    shutdown,
    startup,
)


def _unreachable_client():
    client = MagicMock()
    client.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def offline_ctx(app_settings, directory, sqlite_store):
    cache = CacheManager(client_factory=_unreachable_client, reconnect_base_delay=10)
    return build_services(app_settings, directory=directory, store=sqlite_store, cache=cache)


class TestBuildServices:
    def test_wires_shared_collaborators(self, service_ctx):
        assert service_ctx.ingestor.writer is service_ctx.writer
        assert service_ctx.ingestor.cache is service_ctx.cache
        assert service_ctx.pubsub.cache is service_ctx.cache
        assert service_ctx.emitter.sio is service_ctx.sio
        assert service_ctx.writer.max_batch_size == service_ctx.settings.batch_writer.max_batch_size

    def test_retention_disabled_by_env(self, service_ctx):
        assert service_ctx.retention is None

    def test_retention_enabled(self, app_settings, directory, sqlite_store):
        app_settings.retention.enabled = True
        ctx = build_services(app_settings, directory=directory, store=sqlite_store, cache=CacheManager())
        assert ctx.retention is not None
        assert ctx.retention.interval == app_settings.retention.check_interval_seconds

    def test_missing_device_file_gives_empty_directory(self, app_settings, sqlite_store):
        ctx = build_services(app_settings, store=sqlite_store, cache=CacheManager())
        assert len(ctx.directory) == 0


class TestRetention:
    def test_prune_queues_delete_per_table(self, service_ctx):
        before = epoch_ms()
        assert prune_history(service_ctx) == len(TABLE_COLUMNS)
        assert service_ctx.writer.queue_size == len(TABLE_COLUMNS)

        cutoff = service_ctx.writer._queue[0].payload["before"]
        expected = before - service_ctx.settings.retention.raw_days * 24 * 3600 * 1000
        assert abs(cutoff - expected) < 5000

    @pytest.mark.asyncio
    async def test_prune_removes_old_rows(self, service_ctx):
        old = epoch_ms() - 400 * 24 * 3600 * 1000
        service_ctx.store.write_batch([("ping_history", "insert", [
            {"device_id": "core-sw1", "status": "up", "latency": 1, "packet_loss": 0, "timestamp": old},
            {"device_id": "core-sw1", "status": "up", "latency": 1, "packet_loss": 0, "timestamp": epoch_ms()},
        ])])

        prune_history(service_ctx)
        await service_ctx.writer.flush()

        assert service_ctx.store.count_rows("ping_history") == 1


class TestStartupShutdown:
    @pytest.mark.asyncio
    async def test_startup_without_redis(self, offline_ctx):
        await startup(offline_ctx)
        try:
            assert offline_ctx.ready is True
            assert offline_ctx.cache.state == ConnectionState.RECONNECTING
        finally:
            await shutdown(offline_ctx)

        assert offline_ctx.ready is False
        assert offline_ctx.shutting_down is True
        assert offline_ctx.cache.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_shutdown_drains_pending_writes(self, offline_ctx):
        await startup(offline_ctx)
        await offline_ctx.ingestor.ingest_ping([{
            "name": "ping", "tags": {"url": "10.0.0.1"},
            "fields": {"average_response_ms": 5, "percent_packet_loss": 0},
        }])
        assert offline_ctx.writer.queue_size == 1
        store = offline_ctx.store

        with patch.object(store, "close") as close:
            await shutdown(offline_ctx)
            close.assert_called_once()

        assert offline_ctx.writer.queue_size == 0
        assert store.count_rows("ping_history") == 1

    @pytest.mark.asyncio
    async def test_shutdown_idempotent(self, offline_ctx):
        await startup(offline_ctx)
        await shutdown(offline_ctx)
        with patch.object(offline_ctx.writer, "shutdown", new=AsyncMock()) as writer_shutdown:
            await shutdown(offline_ctx)
        writer_shutdown.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_startup_starts_bridge(self, offline_ctx):
        offline_ctx.sio.emit = AsyncMock()
        await startup(offline_ctx)
        try:
            await offline_ctx.pubsub.publish("device:update", {"deviceId": "core-sw1", "status": "up"})
        finally:
            await shutdown(offline_ctx)

        events = [c.args[0] for c in offline_ctx.sio.emit.await_args_list]
        assert "device:update" in events

    @pytest.mark.asyncio
    async def test_lifecycle_announced_on_system_channel(self, offline_ctx):
        offline_ctx.sio.emit = AsyncMock()
        await startup(offline_ctx)
        await shutdown(offline_ctx)

        announcements = [
            c.args[1]["data"] for c in offline_ctx.sio.emit.await_args_list
            if c.args[0] == "status:update" and c.args[1]["data"].get("type") == "system"
        ]
        assert [a["status"] for a in announcements] == ["online", "shutting_down"]
        assert announcements[0]["instanceId"] == offline_ctx.instance_id
        assert announcements[0]["devices"] == len(offline_ctx.directory)


class TestSignals:
    @pytest.mark.asyncio
    async def test_first_signal_sets_stop_event(self):
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        with patch.object(loop, "add_signal_handler") as add:
            install_signal_handlers(stop_event)

        registered = {c.args[0]: c for c in add.call_args_list}
        assert set(registered) == {signal.SIGTERM, signal.SIGINT}

        handler, signum = registered[signal.SIGTERM].args[1:]
        handler(signum)
        assert stop_event.is_set()

        with pytest.raises(SystemExit):
            handler(signum)
