"""
Domain records for the telemetry pipeline.

Readings and events are frozen dataclasses: created once per ingested
metric and never mutated afterwards. ``to_row()`` gives the column mapping
used by the durable store; ``to_message()`` gives the camelCase payload
published on pub/sub channels and pushed to observers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from core.timestamps import epoch_ms, from_epoch_ms


class Status(str, Enum):
    """Classified reachability of a device."""
    UP = "up"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass(frozen=True)
class ThresholdTier:
    """A latency / packet-loss ceiling."""
    latency: float
    packet_loss: float


@dataclass(frozen=True)
class Thresholds:
    """Good and degraded tiers used to classify ping readings."""
    good: ThresholdTier = ThresholdTier(latency=50, packet_loss=1)
    degraded: ThresholdTier = ThresholdTier(latency=150, packet_loss=5)

    @classmethod
    def from_config(cls, data: Optional[dict], base: Optional["Thresholds"] = None) -> "Thresholds":
        """
        Build thresholds from a config mapping, merged over ``base``.

        Two layouts are accepted:
            {"good": {"latency": 50, "packetLoss": 1}, "degraded": {...}}
            {"latency": {"good": 50, "degraded": 150}, "packetLoss": {...}}
        """
        base = base or cls()
        if not data:
            return base

        good = {"latency": base.good.latency, "packet_loss": base.good.packet_loss}
        degraded = {"latency": base.degraded.latency, "packet_loss": base.degraded.packet_loss}
        tiers = {"good": good, "degraded": degraded}

        for tier_name, tier in tiers.items():
            section = data.get(tier_name) or {}
            if "latency" in section:
                tier["latency"] = float(section["latency"])
            loss = section.get("packetLoss", section.get("packet_loss"))
            if loss is not None:
                tier["packet_loss"] = float(loss)

        latency = data.get("latency")
        if isinstance(latency, dict):
            for tier_name, tier in tiers.items():
                if tier_name in latency:
                    tier["latency"] = float(latency[tier_name])

        loss = data.get("packetLoss", data.get("packet_loss"))
        if isinstance(loss, dict):
            for tier_name, tier in tiers.items():
                if tier_name in loss:
                    tier["packet_loss"] = float(loss[tier_name])

        return cls(good=ThresholdTier(**good), degraded=ThresholdTier(**degraded))


@dataclass(frozen=True)
class Device:
    """A monitored device as known to the device directory."""
    id: str
    ip: str
    name: str = ""
    area_id: Optional[str] = None
    thresholds: Optional[Thresholds] = None
    snmp_enabled: bool = False

    @property
    def address(self) -> str:
        """IP without any ``:port`` suffix."""
        return strip_port(self.ip)


def strip_port(address: str) -> str:
    """Drop a trailing ``:port`` from an address (``10.0.0.1:161`` -> ``10.0.0.1``)."""
    return str(address).strip().split(":")[0]


@dataclass(frozen=True)
class PingReading:
    device_id: str
    status: Status
    latency: Optional[float]
    packet_loss: float
    timestamp: int  # epoch ms

    def to_row(self) -> dict:
        return {
            "device_id": self.device_id,
            "status": self.status.value,
            "latency": self.latency,
            "packet_loss": self.packet_loss,
            "timestamp": self.timestamp,
        }

    def to_message(self) -> dict:
        return {
            "deviceId": self.device_id,
            "status": self.status.value,
            "latency": self.latency,
            "packetLoss": self.packet_loss,
            "lastChecked": from_epoch_ms(self.timestamp).isoformat(),
        }


@dataclass(frozen=True)
class InterfaceReading:
    device_id: str
    if_index: int
    if_name: str
    oper_status: int
    admin_status: int
    speed_mbps: int
    timestamp: int  # epoch ms
    if_descr: str = ""
    in_octets: int = 0
    out_octets: int = 0
    in_errors: int = 0
    out_errors: int = 0
    in_discards: int = 0
    out_discards: int = 0

    def to_row(self) -> dict:
        return {
            "device_id": self.device_id,
            "if_index": self.if_index,
            "if_name": self.if_name,
            "if_descr": self.if_descr,
            "oper_status": self.oper_status,
            "admin_status": self.admin_status,
            "speed_mbps": self.speed_mbps,
            "in_octets": self.in_octets,
            "out_octets": self.out_octets,
            "in_errors": self.in_errors,
            "out_errors": self.out_errors,
            "in_discards": self.in_discards,
            "out_discards": self.out_discards,
            "timestamp": self.timestamp,
        }

    def to_message(self) -> dict:
        return {
            "deviceId": self.device_id,
            "ifIndex": self.if_index,
            "ifName": self.if_name,
            "operStatus": self.oper_status,
            "speedMbps": self.speed_mbps,
            "inErrors": self.in_errors,
            "outErrors": self.out_errors,
            "timestamp": from_epoch_ms(self.timestamp).isoformat(),
        }


@dataclass(frozen=True)
class WirelessReading:
    device_id: str
    ssid: str
    signal: int
    noise_floor: int
    tx_rate: int
    rx_rate: int
    timestamp: int  # epoch ms

    def to_row(self) -> dict:
        return {
            "device_id": self.device_id,
            "ssid": self.ssid,
            "signal": self.signal,
            "noise_floor": self.noise_floor,
            "tx_rate": self.tx_rate,
            "rx_rate": self.rx_rate,
            "timestamp": self.timestamp,
        }

    def to_message(self) -> dict:
        return {
            "deviceId": self.device_id,
            "ssid": self.ssid,
            "signal": self.signal,
            "noiseFloor": self.noise_floor,
            "txRate": self.tx_rate,
            "rxRate": self.rx_rate,
            "timestamp": from_epoch_ms(self.timestamp).isoformat(),
        }


@dataclass(frozen=True)
class InterfaceSample:
    """What the flap detector needs from one interface reading."""
    oper_status: int
    speed_mbps: int
    timestamp: int  # epoch ms


@dataclass(frozen=True)
class FlappingEvent:
    device_id: str
    if_index: int
    if_name: str
    event_type: str  # speed_change | status_change
    from_speed: int
    to_speed: int
    from_status: int
    to_status: int
    severity: str
    timestamp: int  # epoch ms
    total_changes: int
    speed_changes: int
    status_changes: int
    window_minutes: float

    def to_row(self) -> dict:
        return {
            "device_id": self.device_id,
            "if_index": self.if_index,
            "if_name": self.if_name,
            "event_type": self.event_type,
            "from_speed": self.from_speed,
            "to_speed": self.to_speed,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "severity": self.severity,
            "timestamp": self.timestamp,
        }

    def to_message(self) -> dict:
        return {
            "deviceId": self.device_id,
            "ifIndex": self.if_index,
            "ifName": self.if_name,
            "eventType": self.event_type,
            "fromSpeed": self.from_speed,
            "toSpeed": self.to_speed,
            "fromStatus": self.from_status,
            "toStatus": self.to_status,
            "severity": self.severity,
            "timestamp": self.timestamp,
            "changes": {
                "total": self.total_changes,
                "speed": self.speed_changes,
                "status": self.status_changes,
                "windowMinutes": self.window_minutes,
            },
        }


# (error, success) -> None, or a coroutine function with the same signature
WriteCallback = Callable[[Optional[BaseException], bool], Any]


@dataclass
class WriteRequest:
    """A queued durable write. Lives only inside BatchWriter's queue."""
    operation: str
    table: str
    payload: dict
    callback: Optional[WriteCallback] = None
    enqueued_at: int = field(default_factory=epoch_ms)
