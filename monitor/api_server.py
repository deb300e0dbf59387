"""
Network Status Monitor API Server.

Entry point (``netstatus-monitor``): loads settings, configures logging,
builds the services and serves HTTP + Socket.IO until SIGTERM/SIGINT,
then drains pending writes before exiting.
"""

import asyncio
import logging
import sys

from aiohttp import web
from dotenv import load_dotenv

from config.settings import get_settings
from monitor.app import create_app
from monitor.lifecycle import build_services, install_signal_handlers
from monitor.logging_config import configure_logging

logger = logging.getLogger(__name__)


async def serve():
    settings = get_settings()
    ctx = build_services(settings)
    app = create_app(ctx)

    runner = web.AppRunner(app, shutdown_timeout=settings.server.shutdown_timeout, handle_signals=False)
    await runner.setup()
    site = web.TCPSite(runner, settings.server.host, settings.server.port)

    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    try:
        await site.start()
        logger.info(f"Serving on {settings.server.host}:{settings.server.port} (HTTP + Socket.IO)")
        logger.info(f"  - Log format: {settings.log_format}")
        logger.info(f"  - Log level: {settings.log_level}")
        await stop_event.wait()
    finally:
        # Runs on_cleanup, which performs the final drain
        await runner.cleanup()


def main():
    load_dotenv()
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format, settings.log_file or None)

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        sys.exit(130)


if __name__ == '__main__':
    main()
