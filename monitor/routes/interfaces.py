"""
Interface state and flapping report routes.

Latest interface state is served from the cache when Redis is up and
from interface_history otherwise. Flapping reports always come from the
durable store; live detector state is under /api/flapping/stats.
"""

import asyncio
import logging

from aiohttp import web

from config.redis_client import CacheKeys
from core.errors import NotFoundError, ValidationError
from monitor.app import get_ctx

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()

MAX_HOURS = 24 * 30


def _hours(request: web.Request, default: float = 24) -> float:
    raw = request.query.get('hours')
    if raw is None:
        return default
    try:
        hours = float(raw)
    except ValueError:
        raise ValidationError("hours must be a number")
    if not 0 < hours <= MAX_HOURS:
        raise ValidationError(f"hours must be between 0 and {MAX_HOURS}")
    return hours


def _device_id(request: web.Request) -> str:
    ctx = get_ctx(request)
    device_id = request.match_info['device_id']
    if ctx.directory.get(device_id) is None:
        raise NotFoundError(f"Device {device_id} not found")
    return device_id


@routes.get('/api/interfaces/{device_id}')
async def get_interfaces(request: web.Request):
    """Latest state of every interface on a device."""
    ctx = get_ctx(request)
    device_id = _device_id(request)

    source = "cache"
    interfaces = []
    keys = await ctx.cache.keys(CacheKeys.interface_pattern(device_id))
    if keys:
        cached = await ctx.cache.mget(keys)
        interfaces = sorted(cached.values(), key=lambda i: i.get('ifIndex', 0))

    if not interfaces:
        source = "database"
        interfaces = await asyncio.to_thread(ctx.store.get_latest_interfaces, device_id)

    return web.json_response({
        "deviceId": device_id,
        "interfaces": interfaces,
        "source": source,
    })


@routes.get('/api/interfaces/{device_id}/{if_index}/history')
async def get_interface_history(request: web.Request):
    ctx = get_ctx(request)
    device_id = _device_id(request)
    try:
        if_index = int(request.match_info['if_index'])
    except ValueError:
        raise ValidationError("ifIndex must be an integer")
    hours = _hours(request)

    history = await asyncio.to_thread(ctx.store.get_interface_history, device_id, if_index, hours)
    return web.json_response({
        "deviceId": device_id,
        "ifIndex": if_index,
        "hours": hours,
        "history": history,
    })


# Fixed paths first: aiohttp matches in registration order
@routes.get('/api/flapping/report')
async def flapping_report(request: web.Request):
    """Per-interface flapping event counts across all devices."""
    ctx = get_ctx(request)
    hours = _hours(request)
    report = await asyncio.to_thread(
        ctx.store.get_flapping_report, hours, ctx.detector.config.change_threshold
    )
    return web.json_response({
        "hours": hours,
        "interfaces": report,
        "flappingCount": sum(1 for r in report if r["isFlapping"]),
    })


@routes.get('/api/flapping/stats')
async def flapping_stats(request: web.Request):
    """Live detector state (in-memory, since process start)."""
    ctx = get_ctx(request)
    return web.json_response({
        "config": ctx.detector.get_config(),
        "stats": ctx.detector.get_stats(),
    })


@routes.get('/api/flapping/{device_id}')
async def flapping_events(request: web.Request):
    ctx = get_ctx(request)
    device_id = _device_id(request)
    hours = _hours(request)
    events = await asyncio.to_thread(ctx.store.get_flapping_events, device_id, hours)
    return web.json_response({
        "deviceId": device_id,
        "hours": hours,
        "events": events,
    })
