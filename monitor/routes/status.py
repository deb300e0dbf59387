"""
Device status and ping history routes.

Current status comes from the ``device:status:*`` cache entries written on
every ping; devices missing from the cache (Redis down, TTL expired) fall
back to their latest ping_history row.
"""

import asyncio
import logging

from aiohttp import web

from config.redis_client import CacheKeys
from core.errors import NotFoundError, ValidationError
from core.timestamps import isonow
from monitor.app import get_ctx

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()

HISTORY_PERIODS = {'1h': 1, '24h': 24, '7d': 24 * 7, '30d': 24 * 30}
DEFAULT_PERIOD = '7d'


@routes.get('/api/status')
async def get_status(request: web.Request):
    """Current status of every configured device."""
    ctx = get_ctx(request)
    devices = ctx.directory.devices

    cached = await ctx.cache.mget([CacheKeys.device_status(d.id) for d in devices])
    stored = {}
    if len(cached) < len(devices):
        stored = await asyncio.to_thread(ctx.store.get_latest_ping_statuses)

    statuses = []
    for device in devices:
        entry = cached.get(CacheKeys.device_status(device.id))
        source = "cache"
        if not isinstance(entry, dict):
            entry = stored.get(device.id)
            source = "database" if entry else None

        statuses.append({
            "deviceId": device.id,
            "name": device.name,
            "areaId": device.area_id,
            "status": entry.get("status") if entry else "unknown",
            "latency": entry.get("latency") if entry else None,
            "packetLoss": entry.get("packetLoss") if entry else None,
            "lastChecked": entry.get("lastChecked") if entry else None,
            "source": source,
        })

    return web.json_response({
        "devices": statuses,
        "timestamp": isonow(),
    })


@routes.get('/api/history/{device_id}')
async def get_history(request: web.Request):
    """Raw ping history for one device over 1h, 24h, 7d or 30d."""
    ctx = get_ctx(request)
    device_id = request.match_info['device_id']
    if ctx.directory.get(device_id) is None:
        raise NotFoundError(f"Device {device_id} not found")

    period = request.query.get('period', DEFAULT_PERIOD)
    if period not in HISTORY_PERIODS:
        raise ValidationError("Invalid period. Use: 1h, 24h, 7d, or 30d")

    history = await asyncio.to_thread(ctx.store.get_ping_history, device_id, HISTORY_PERIODS[period])
    return web.json_response(
        {
            "deviceId": device_id,
            "period": period,
            "data": history,
            "count": len(history),
            "lastUpdated": isonow(),
        },
        headers={'Cache-Control': 'public, max-age=300'},
    )
