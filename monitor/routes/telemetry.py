"""
Collector ingestion routes.

Telegraf's HTTP output posts JSON arrays of metrics here. Both endpoints
answer 204 once every record has been processed (individual bad records
are counted and logged, not rejected), 400 when the body is not an
array and 503 once shutdown has begun.
"""

import logging

from aiohttp import web

from core.errors import ServiceUnavailableError, ValidationError
from monitor.app import get_ctx

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


async def _metrics_from(request: web.Request) -> list:
    if get_ctx(request).shutting_down:
        raise ServiceUnavailableError("Service is shutting down")
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, list):
        raise ValidationError("Expected array of metrics")
    return body


@routes.post('/api/telegraf/ping')
@routes.post('/ping')
async def ingest_ping(request: web.Request):
    """Receive ICMP ping metrics."""
    metrics = await _metrics_from(request)
    logger.debug(f"Received {len(metrics)} ping metrics")
    await get_ctx(request).ingestor.ingest_ping(metrics)
    return web.Response(status=204)


@routes.post('/api/telegraf/snmp')
@routes.post('/snmp')
async def ingest_snmp(request: web.Request):
    """Receive SNMP interface and wireless metrics."""
    metrics = await _metrics_from(request)
    logger.debug(f"Received {len(metrics)} SNMP metrics")
    await get_ctx(request).ingestor.ingest_snmp(metrics)
    return web.Response(status=204)


@routes.get('/api/telegraf/status')
async def telegraf_status(request: web.Request):
    """Integration status: how many devices the collector can report on."""
    ctx = get_ctx(request)
    devices = ctx.directory.devices
    return web.json_response({
        "enabled": True,
        "devicesConfigured": len(devices),
        "snmpDevicesConfigured": sum(1 for d in devices if d.snmp_enabled),
        "version": ctx.settings.app_version,
    })
