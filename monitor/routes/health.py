"""
Health check endpoints.

Provides Kubernetes-compatible liveness, readiness, and detailed health probes.
Redis is not required for readiness: without it the service still ingests
and persists, it only loses cross-instance fan-out.
"""

import asyncio
import logging
import platform

from aiohttp import web

from core.timestamps import isonow
from monitor.app import get_ctx

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()

SERVICE_NAME = "netstatus-monitor"


def check_store_health(ctx) -> tuple[bool, str]:
    """Check the durable store answers a trivial query."""
    try:
        with ctx.store.db.connect() as conn:
            conn.execute("SELECT 1")
        return True, "connected"
    except Exception as e:
        logger.warning(f"Store health check failed: {e}")
        return False, "connection failed"


# =============================================================================
# Liveness Probe
# =============================================================================

@routes.get('/healthz')
async def liveness(request: web.Request):
    """Liveness probe - is the process running?"""
    return web.json_response({
        "status": "ok",
        "timestamp": isonow(),
        "service": SERVICE_NAME,
        "version": get_ctx(request).settings.app_version,
    })


# =============================================================================
# Readiness Probe
# =============================================================================

@routes.get('/readyz')
async def readiness(request: web.Request):
    """Readiness probe - is the service ready to accept traffic?"""
    ctx = get_ctx(request)
    checks = {}

    store_ok, store_msg = await asyncio.to_thread(check_store_health, ctx)
    checks["database"] = {"healthy": store_ok, "message": store_msg, "critical": True}
    checks["redis"] = {
        "healthy": ctx.cache.is_available(),
        "message": ctx.cache.state.value,
        "critical": False,
    }
    checks["lifecycle"] = {
        "healthy": ctx.ready,
        "message": "started" if ctx.ready else ("shutting down" if ctx.shutting_down else "starting"),
        "critical": True,
    }

    ready = all(c["healthy"] for c in checks.values() if c["critical"])
    return web.json_response({
        "status": "ready" if ready else "not_ready",
        "timestamp": isonow(),
        "checks": checks,
    }, status=200 if ready else 503)


# =============================================================================
# Detailed Health
# =============================================================================

@routes.get('/api/health/detailed')
async def detailed_health(request: web.Request):
    """Cache health, writer backlog, pub/sub and observer stats."""
    ctx = get_ctx(request)
    cache_health = await ctx.cache.health_check()
    writer_stats = ctx.writer.get_stats()

    if not ctx.ready:
        status = "starting"
    elif not cache_health["healthy"] or writer_stats["queue_size"] >= ctx.writer.max_batch_size * 2:
        status = "degraded"
    else:
        status = "healthy"

    return web.json_response({
        "status": status,
        "timestamp": isonow(),
        "version": ctx.settings.app_version,
        "startedAt": ctx.started_at,
        "python": platform.python_version(),
        "devices": len(ctx.directory),
        "redis": {**cache_health, **ctx.cache.get_stats()},
        "batchWriter": writer_stats,
        "pubsub": ctx.pubsub.get_stats(),
        "websocket": ctx.emitter.get_stats(),
        "flapping": {
            "trackedInterfaces": ctx.detector.get_stats()["trackedInterfaces"],
            "config": ctx.detector.get_config(),
        },
    })
