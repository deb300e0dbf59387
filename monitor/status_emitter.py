"""
Socket.IO dissemination of live status.

Observers connect over Socket.IO and may join per-device and per-area rooms:

    client -> server: subscribe {deviceId?, areaId?}, unsubscribe {...}, ping
    server -> client: connected, status:update, device:update, area:update,
                      alert:new, pong

Every emit goes to the matching room (when there is one) and to all
clients, tagged with ``scope`` so a subscribed client can tell the two
copies apart. Delivery is best-effort: emit failures are logged, never
raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import socketio

from core.timestamps import epoch_ms, isonow

logger = logging.getLogger(__name__)

SCOPE_ROOM = "room"
SCOPE_BROADCAST = "broadcast"


def device_room(device_id: str) -> str:
    return f"device:{device_id}"


def area_room(area_id: str) -> str:
    return f"area:{area_id}"


@dataclass
class ClientInfo:
    sid: str
    connected_at: str = field(default_factory=isonow)
    rooms: Set[str] = field(default_factory=set)


class StatusEmitter:
    """Connection registry and room-aware emitter over a socketio.AsyncServer."""

    def __init__(self, sio: socketio.AsyncServer):
        self.sio = sio
        self.clients: Dict[str, ClientInfo] = {}
        self._emit_errors = 0
        self._register_handlers()

    def _register_handlers(self):
        self.sio.on("connect", self.handle_connect)
        self.sio.on("disconnect", self.handle_disconnect)
        self.sio.on("subscribe", self.handle_subscribe)
        self.sio.on("unsubscribe", self.handle_unsubscribe)
        self.sio.on("ping", self.handle_ping)

    # =========================================================================
    # Client events
    # =========================================================================

    async def handle_connect(self, sid, environ=None, auth=None):
        self.clients[sid] = ClientInfo(sid=sid)
        logger.debug(f"Observer connected: {sid} ({len(self.clients)} total)")
        await self._emit("connected", {
            "clientId": sid,
            "message": "Connected to status stream",
            "timestamp": isonow(),
        }, to=sid)

    async def handle_disconnect(self, sid, *args):
        self.clients.pop(sid, None)
        logger.debug(f"Observer disconnected: {sid} ({len(self.clients)} total)")

    async def handle_subscribe(self, sid, data=None):
        client = self.clients.get(sid)
        if client is None:
            return
        for room in self._rooms_from(data):
            await self.sio.enter_room(sid, room)
            client.rooms.add(room)
            logger.debug(f"Observer {sid} joined {room}")

    async def handle_unsubscribe(self, sid, data=None):
        client = self.clients.get(sid)
        if client is None:
            return
        for room in self._rooms_from(data):
            await self.sio.leave_room(sid, room)
            client.rooms.discard(room)
            logger.debug(f"Observer {sid} left {room}")

    async def handle_ping(self, sid, data=None):
        await self._emit("pong", {"timestamp": epoch_ms()}, to=sid)

    @staticmethod
    def _rooms_from(data: Any):
        if not isinstance(data, dict):
            return []
        rooms = []
        if data.get("deviceId"):
            rooms.append(device_room(str(data["deviceId"])))
        if data.get("areaId"):
            rooms.append(area_room(str(data["areaId"])))
        return rooms

    # =========================================================================
    # Server emits
    # =========================================================================

    async def _emit(self, event: str, data: dict, to: Optional[str] = None) -> bool:
        try:
            await self.sio.emit(event, data, to=to)
            return True
        except Exception as e:
            self._emit_errors += 1
            logger.error(f"Error emitting {event}{f' to {to}' if to else ''}: {e}")
            return False

    async def emit_status_update(self, data: Any):
        await self._emit("status:update", {
            "data": data,
            "scope": SCOPE_BROADCAST,
            "timestamp": isonow(),
        })

    async def emit_device_update(self, device_id: str, status: Any):
        payload = {"deviceId": device_id, "status": status, "timestamp": isonow()}
        await self._emit("device:update", {**payload, "scope": SCOPE_ROOM}, to=device_room(device_id))
        await self._emit("device:update", {**payload, "scope": SCOPE_BROADCAST})

    async def emit_area_update(self, area_id: str, status: Any):
        payload = {"areaId": area_id, "status": status, "timestamp": isonow()}
        await self._emit("area:update", {**payload, "scope": SCOPE_ROOM}, to=area_room(area_id))
        await self._emit("area:update", {**payload, "scope": SCOPE_BROADCAST})

    async def emit_alert(self, alert: dict):
        payload = {"alert": alert, "timestamp": isonow()}
        device_id = alert.get("deviceId") if isinstance(alert, dict) else None
        if device_id:
            await self._emit("alert:new", {**payload, "scope": SCOPE_ROOM}, to=device_room(device_id))
        await self._emit("alert:new", {**payload, "scope": SCOPE_BROADCAST})

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> dict:
        return {
            "connectedClients": len(self.clients),
            "emitErrors": self._emit_errors,
            "clients": [
                {"id": c.sid, "connectedAt": c.connected_at, "rooms": sorted(c.rooms)}
                for c in self.clients.values()
            ],
        }
