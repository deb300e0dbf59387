"""
Pub/sub to Socket.IO bridge.

Forwards updates published on the Redis channels (by this or any other
ingesting instance) to this instance's observers. Instance lifecycle
announcements on ``system:status`` reach observers as ``status:update``
events with ``type: "system"``.
"""

import logging
from typing import Callable, List

from config.redis_client import Channels
from core.pubsub import PubSubManager
from monitor.status_emitter import StatusEmitter

logger = logging.getLogger(__name__)


def start_pubsub_bridge(pubsub: PubSubManager, emitter: StatusEmitter) -> Callable[[], None]:
    """
    Register channel handlers that push to the emitter.

    Returns a callable that removes every handler registered here.
    """

    async def on_device_update(message):
        if not isinstance(message, dict) or not message.get("deviceId"):
            logger.warning(f"Dropping device update without deviceId: {message!r}")
            return
        await emitter.emit_device_update(message["deviceId"], message)
        if message.get("areaId"):
            await emitter.emit_area_update(message["areaId"], {
                "deviceId": message["deviceId"],
                "status": message.get("status"),
            })

    async def on_status_update(message):
        await emitter.emit_status_update(message)

    async def on_system_status(message):
        if not isinstance(message, dict):
            logger.warning(f"Dropping malformed system status: {message!r}")
            return
        await emitter.emit_status_update({"type": "system", **message})

    async def on_flapping_alert(message):
        if not isinstance(message, dict):
            logger.warning(f"Dropping malformed flapping alert: {message!r}")
            return
        await emitter.emit_alert({"type": "flapping", **message})

    unsubscribers: List[Callable[[], None]] = [
        pubsub.on(Channels.DEVICE_UPDATE, on_device_update),
        pubsub.on(Channels.INTERFACE_UPDATE, on_status_update),
        pubsub.on(Channels.WIRELESS_UPDATE, on_status_update),
        pubsub.on(Channels.ALERT_FLAPPING, on_flapping_alert),
        pubsub.on(Channels.SYSTEM_STATUS, on_system_status),
    ]
    logger.info("Pub/sub bridge to Socket.IO registered")

    def stop():
        for unsubscribe in unsubscribers:
            unsubscribe()

    return stop
