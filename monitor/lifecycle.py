"""
Service construction, startup/shutdown ordering and signal handling.

All long-lived services are built once by ``build_services`` and carried
in a ServiceContext; the HTTP app and the Socket.IO handlers reach them
through it rather than through module globals.

Startup:  store schema -> Redis connect -> pub/sub listener + bridge
          -> batch writer timer -> retention timer -> "online" announcement
Shutdown: retention timer -> "shutting_down" announcement -> pub/sub listener
          -> batch writer drain
          -> Redis disconnect -> store close
"""

import asyncio
import logging
import os
import signal
import socket
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import socketio

from config.devices import DeviceDirectory
from config.redis_client import Channels
from config.settings import AppSettings
from core.batch_writer import BatchWriter
from core.cache_manager import CacheManager, ConnectionStateChange
from core.db import DatabaseManager
from core.flapping import FlappingDetector
from core.ingest import MetricIngestor
from core.periodic import PeriodicTask
from core.pubsub import PubSubManager
from core.storage import DELETE, TABLE_COLUMNS, TelemetryStore
from core.timestamps import epoch_ms, isonow
from monitor.pubsub_bridge import start_pubsub_bridge
from monitor.status_emitter import StatusEmitter

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Every long-lived service of one running instance."""
    settings: AppSettings
    directory: DeviceDirectory
    store: TelemetryStore
    cache: CacheManager
    pubsub: PubSubManager
    writer: BatchWriter
    detector: FlappingDetector
    ingestor: MetricIngestor
    sio: socketio.AsyncServer
    emitter: StatusEmitter
    retention: Optional[PeriodicTask] = None
    started_at: str = field(default_factory=isonow)
    instance_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    ready: bool = False
    shutting_down: bool = False
    active_requests: int = 0
    _bridge_stop: Optional[Callable[[], None]] = None


def _log_cache_state(change: ConnectionStateChange):
    logger.debug(f"Cache state {change.previous.value} -> {change.current.value} (attempt {change.attempt})")


def create_socketio(settings: AppSettings) -> socketio.AsyncServer:
    origins = settings.server.cors_origins
    return socketio.AsyncServer(
        async_mode="aiohttp",
        cors_allowed_origins="*" if origins == "*" else [o.strip() for o in origins.split(",")],
        ping_timeout=settings.server.socketio_ping_timeout,
        ping_interval=settings.server.socketio_ping_interval,
        logger=False,
        engineio_logger=False,
    )


def build_services(
    settings: AppSettings,
    directory: Optional[DeviceDirectory] = None,
    store: Optional[TelemetryStore] = None,
    cache: Optional[CacheManager] = None,
    sio: Optional[socketio.AsyncServer] = None,
) -> ServiceContext:
    """Construct (but do not start) every service from settings."""
    directory = directory or DeviceDirectory.from_file(settings.devices_file)

    if store is None:
        db = settings.database
        store = TelemetryStore(DatabaseManager(
            db_url=db.database_url,
            db_path=db.sqlite_path,
            pool_size=db.database_pool_size,
        ))

    if cache is None:
        rs = settings.redis
        cache = CacheManager(
            redis_url=rs.redis_url,
            password=rs.redis_password.get_secret_value() if rs.redis_password else None,
            socket_timeout=rs.redis_socket_timeout,
            max_reconnect_attempts=rs.redis_max_reconnect_attempts,
            reconnect_base_delay=rs.redis_reconnect_base_delay,
            reconnect_max_delay=rs.redis_reconnect_max_delay,
            on_state_change=_log_cache_state,
        )

    pubsub = PubSubManager(
        cache,
        reconnect_base=settings.redis.pubsub_reconnect_base,
        reconnect_max=settings.redis.pubsub_reconnect_max,
    )
    bw = settings.batch_writer
    writer = BatchWriter(
        store,
        max_batch_size=bw.max_batch_size,
        batch_interval=bw.interval_seconds,
        continuation_delay=bw.continuation_delay,
    )
    detector = FlappingDetector.from_settings(settings.flapping)
    ingestor = MetricIngestor(directory, writer, cache, pubsub, detector)

    sio = sio or create_socketio(settings)
    emitter = StatusEmitter(sio)

    ctx = ServiceContext(
        settings=settings,
        directory=directory,
        store=store,
        cache=cache,
        pubsub=pubsub,
        writer=writer,
        detector=detector,
        ingestor=ingestor,
        sio=sio,
        emitter=emitter,
    )

    if settings.retention.enabled:
        ctx.retention = PeriodicTask(
            "retention",
            settings.retention.check_interval_seconds,
            lambda: prune_history(ctx),
        )

    return ctx


def prune_history(ctx: ServiceContext) -> int:
    """Queue deletion of rows older than the retention window. Returns tables queued."""
    cutoff = epoch_ms() - ctx.settings.retention.raw_days * 24 * 3600 * 1000

    def _done(table):
        def callback(error, success):
            if success:
                logger.info(f"Pruned {table} rows older than {ctx.settings.retention.raw_days} days")
            else:
                logger.error(f"Retention prune of {table} failed: {error}")
        return callback

    for table in TABLE_COLUMNS:
        ctx.writer.queue_write(DELETE, table, {"before": cutoff}, callback=_done(table))
    return len(TABLE_COLUMNS)


async def announce_status(ctx: ServiceContext, status: str) -> bool:
    """Publish this instance's lifecycle status on the system channel."""
    return await ctx.pubsub.publish(Channels.SYSTEM_STATUS, {
        "instanceId": ctx.instance_id,
        "status": status,
        "version": ctx.settings.app_version,
        "devices": len(ctx.directory),
        "startedAt": ctx.started_at,
        "timestamp": isonow(),
    })


async def startup(ctx: ServiceContext):
    logger.info(f"Starting telemetry monitor v{ctx.settings.app_version} ({len(ctx.directory)} devices)")

    await asyncio.to_thread(ctx.store.initialize)

    if not await ctx.cache.connect():
        logger.warning("Redis unavailable at startup, running without cache (local dispatch only)")

    ctx._bridge_stop = start_pubsub_bridge(ctx.pubsub, ctx.emitter)
    await ctx.pubsub.start()
    ctx.writer.start()
    if ctx.retention is not None:
        ctx.retention.start()

    ctx.ready = True
    await announce_status(ctx, "online")
    logger.info("Telemetry monitor ready")


async def shutdown(ctx: ServiceContext):
    if ctx.shutting_down:
        return
    ctx.shutting_down = True
    ctx.ready = False
    logger.info("Starting graceful shutdown...")

    # Wait for in-flight requests so their writes are queued before the drain
    timeout = ctx.settings.server.shutdown_timeout
    started = time.monotonic()
    while ctx.active_requests > 0 and time.monotonic() - started < timeout:
        logger.info(f"Waiting for {ctx.active_requests} active requests to complete...")
        await asyncio.sleep(0.5)
    if ctx.active_requests > 0:
        logger.warning(f"Shutdown timeout reached with {ctx.active_requests} requests still active")

    if ctx.retention is not None:
        await ctx.retention.stop()

    await announce_status(ctx, "shutting_down")
    await ctx.pubsub.stop()
    if ctx._bridge_stop is not None:
        ctx._bridge_stop()

    logger.info("Flushing pending writes...")
    await ctx.writer.shutdown()

    logger.info("Closing Redis connections...")
    await ctx.cache.disconnect()

    logger.info("Closing database connections...")
    await asyncio.to_thread(ctx.store.close)

    logger.info("Graceful shutdown complete")


def install_signal_handlers(stop_event: asyncio.Event):
    """First SIGTERM/SIGINT requests a graceful stop; a second one forces exit."""
    loop = asyncio.get_running_loop()

    def _handle(signum: int):
        if stop_event.is_set():
            logger.warning("Forced shutdown requested")
            raise SystemExit(1)
        logger.info(f"Received {signal.Signals(signum).name}, starting graceful shutdown...")
        stop_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _handle, signum)
    logger.info("Registered shutdown handlers for SIGTERM and SIGINT")
