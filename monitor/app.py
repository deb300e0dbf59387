"""
aiohttp Application Factory.

Creates the web application, attaches the Socket.IO server and wires the
ServiceContext into request handlers via ``request.app[CTX]``.
"""

import logging
import time
import uuid

from aiohttp import web

from core.errors import error_middleware
from monitor.lifecycle import ServiceContext, shutdown, startup

logger = logging.getLogger(__name__)

CTX = web.AppKey("ctx", ServiceContext)

_QUIET_PATHS = ('/healthz', '/readyz')
_SOCKETIO_PATH = '/socket.io'


def get_ctx(request: web.Request) -> ServiceContext:
    return request.app[CTX]


def create_app(ctx: ServiceContext, manage_lifecycle: bool = True) -> web.Application:
    """Create and configure the aiohttp application.

    Args:
        ctx: Services built by ``monitor.lifecycle.build_services``.
        manage_lifecycle: Start/stop the services with the app. Tests that
            drive services directly pass False.

    Returns:
        Configured web.Application.
    """
    app = web.Application(
        middlewares=[request_tracking_middleware, error_middleware],
        client_max_size=10 * 1024 * 1024,
    )
    app[CTX] = ctx

    _register_routes(app)
    ctx.sio.attach(app)

    if manage_lifecycle:
        app.on_startup.append(_on_startup)
        app.on_cleanup.append(_on_cleanup)

    return app


def _register_routes(app: web.Application):
    """Register all route tables."""
    from monitor.routes.health import routes as health_routes
    from monitor.routes.telemetry import routes as telemetry_routes
    from monitor.routes.interfaces import routes as interface_routes
    from monitor.routes.status import routes as status_routes

    app.add_routes(health_routes)
    app.add_routes(telemetry_routes)
    app.add_routes(interface_routes)
    app.add_routes(status_routes)


async def _on_startup(app: web.Application):
    await startup(app[CTX])


async def _on_cleanup(app: web.Application):
    await shutdown(app[CTX])


@web.middleware
async def request_tracking_middleware(request: web.Request, handler):
    """Assign a request ID, count in-flight requests and log completion with timing."""
    ctx = request.app[CTX]
    request_id = request.headers.get('X-Request-ID', str(uuid.uuid4())[:8])
    request['request_id'] = request_id
    # Socket.IO sessions live for the whole connection; they are not drained
    tracked = not request.path.startswith(_SOCKETIO_PATH)
    if tracked:
        ctx.active_requests += 1
    start_time = time.monotonic()
    status = 500

    try:
        response = await handler(request)
        status = response.status
        if not response.prepared:
            response.headers['X-Request-ID'] = request_id
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    finally:
        if tracked:
            ctx.active_requests = max(0, ctx.active_requests - 1)
        duration_ms = (time.monotonic() - start_time) * 1000

        log_level = logging.WARNING if status >= 400 else logging.INFO
        if request.path in _QUIET_PATHS or not tracked:
            log_level = logging.DEBUG

        logger.log(
            log_level,
            f"{request.method} {request.path} -> {status} ({duration_ms:.1f}ms)",
            extra={
                'request_id': request_id,
                'method': request.method,
                'endpoint': request.path,
                'status_code': status,
                'duration_ms': round(duration_ms, 2),
                'remote_addr': request.remote,
            }
        )
