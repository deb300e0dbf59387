"""
Metric ingestion from the collector (Telegraf JSON output).

Each record is resolved to a configured device, classified, queued for
durable write, cached, and published. Records are handled one at a time
and independently: a bad record is counted and the rest of the batch
still goes through.

Accepted record shape:
    {
        "name": "ping" | "interface" | "ubiquiti_wireless",
        "tags": {"url": "10.0.0.1"} or {"agent_host": "10.0.0.1", "ifIndex": "3", ...},
        "fields": {"average_response_ms": 12.5, "percent_packet_loss": 0, ...},
        "timestamp": 1700000000            # epoch seconds, optional
    }
"""

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Iterable, Optional

from config.redis_client import CacheKeys, CacheTTL, Channels
from core.batch_writer import BatchWriter
from core.cache_manager import CacheManager
from core.classification import classify
from core.errors import MalformedMetricError, TelemetryError, UnknownDeviceError
from core.flapping import FlappingDetector
from core.models import (
    Device,
    InterfaceReading,
    InterfaceSample,
    PingReading,
    WirelessReading,
)
from core.pubsub import PubSubManager
from core.storage import INSERT
from core.timestamps import epoch_ms

if TYPE_CHECKING:
    from config.devices import DeviceDirectory

logger = logging.getLogger(__name__)

OPER_STATUS_DOWN = 2


@dataclass
class IngestResult:
    received: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _first(fields: dict, *names: str) -> Any:
    """First of ``names`` present in ``fields`` with a non-null value."""
    for name in names:
        value = fields.get(name)
        if value is not None:
            return value
    return None


def _as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedMetricError(f"Non-numeric value: {value!r}")


def _timestamp_ms(metric: dict) -> int:
    ts = metric.get("timestamp")
    if ts is None:
        return epoch_ms()
    try:
        return epoch_ms(float(ts))
    except (TypeError, ValueError):
        raise MalformedMetricError(f"Invalid timestamp: {ts!r}")


class MetricIngestor:
    """Turns collector records into stored, cached and published readings."""

    def __init__(
        self,
        directory: "DeviceDirectory",
        writer: BatchWriter,
        cache: CacheManager,
        pubsub: PubSubManager,
        detector: FlappingDetector,
    ):
        self.directory = directory
        self.writer = writer
        self.cache = cache
        self.pubsub = pubsub
        self.detector = detector

    def _resolve(self, metric: dict, tag: str) -> Device:
        tags = metric.get("tags") or {}
        address = tags.get(tag)
        if not address:
            raise MalformedMetricError(f"{metric.get('name')} metric missing {tag} tag")
        device = self.directory.find_by_address(address)
        if device is None:
            raise UnknownDeviceError(address)
        return device

    async def _run(self, kind: str, metrics: Iterable[dict], handler) -> IngestResult:
        result = IngestResult()
        for metric in metrics:
            result.received += 1
            try:
                if not isinstance(metric, dict):
                    raise MalformedMetricError(f"Expected object, got {type(metric).__name__}")
                handled = await handler(metric)
            except TelemetryError as e:
                result.skipped += 1
                logger.warning(f"Skipping {kind} metric: {e}")
                continue
            except Exception as e:
                result.errors += 1
                logger.error(f"Error processing {kind} metric: {e}", exc_info=True)
                continue

            if handled:
                result.processed += 1
            else:
                result.skipped += 1

        logger.info(
            f"Processed {result.processed}/{result.received} {kind} metrics "
            f"({result.skipped} skipped, {result.errors} errors)"
        )
        return result

    # =========================================================================
    # Ping
    # =========================================================================

    async def ingest_ping(self, metrics: Iterable[dict]) -> IngestResult:
        return await self._run("ping", metrics, self._handle_ping)

    async def _handle_ping(self, metric: dict) -> bool:
        if metric.get("name") != "ping":
            return False

        device = self._resolve(metric, "url")
        fields = metric.get("fields") or {}

        latency = _as_float(_first(fields, "average_response_ms", "avg"))
        loss = _as_float(_first(fields, "percent_packet_loss", "packet_loss")) or 0.0
        alive = fields.get("result_code") == 0 or latency is not None

        status = classify(latency, loss, self.directory.thresholds_for(device), alive=alive)
        reading = PingReading(
            device_id=device.id,
            status=status,
            latency=latency,
            packet_loss=loss,
            timestamp=_timestamp_ms(metric),
        )

        self.writer.queue_write(INSERT, "ping_history", reading.to_row())

        key = CacheKeys.device_status(device.id)
        previous = await self.cache.get(key)
        previous_status = previous.get("status") if isinstance(previous, dict) else None
        changed = previous_status is not None and previous_status != status.value

        message = {
            **reading.to_message(),
            "name": device.name,
            "areaId": device.area_id,
            "previousStatus": previous_status,
            "statusChanged": changed,
        }
        await self.cache.set(key, message, ttl=CacheTTL.DEVICE_STATUS)

        if changed:
            logger.info(f"Device {device.id} status changed: {previous_status} -> {status.value}")

        await self.pubsub.publish(Channels.DEVICE_UPDATE, message)
        return True

    # =========================================================================
    # SNMP
    # =========================================================================

    async def ingest_snmp(self, metrics: Iterable[dict]) -> IngestResult:
        return await self._run("SNMP", metrics, self._handle_snmp)

    async def _handle_snmp(self, metric: dict) -> bool:
        device = self._resolve(metric, "agent_host")
        name = metric.get("name")

        if name == "interface":
            await self._handle_interface(device, metric)
            return True
        if name == "ubiquiti_wireless":
            await self._handle_wireless(device, metric)
            return True

        logger.debug(f"Unknown SNMP metric type: {name}")
        return False

    async def _handle_interface(self, device: Device, metric: dict):
        tags = metric.get("tags") or {}
        fields = metric.get("fields") or {}

        high_speed = fields.get("ifHighSpeed")
        if high_speed:
            speed_mbps = _as_int(high_speed)
        else:
            speed_mbps = _as_int(fields.get("ifSpeed")) // 1_000_000

        reading = InterfaceReading(
            device_id=device.id,
            if_index=_as_int(tags.get("ifIndex")),
            if_name=tags.get("ifName") or tags.get("ifDescr") or "unknown",
            if_descr=tags.get("ifDescr") or "",
            oper_status=_as_int(fields.get("ifOperStatus"), OPER_STATUS_DOWN),
            admin_status=_as_int(fields.get("ifAdminStatus"), OPER_STATUS_DOWN),
            speed_mbps=speed_mbps,
            in_octets=_as_int(_first(fields, "ifHCInOctets", "ifInOctets")),
            out_octets=_as_int(_first(fields, "ifHCOutOctets", "ifOutOctets")),
            in_errors=_as_int(fields.get("ifInErrors")),
            out_errors=_as_int(fields.get("ifOutErrors")),
            in_discards=_as_int(fields.get("ifInDiscards")),
            out_discards=_as_int(fields.get("ifOutDiscards")),
            timestamp=_timestamp_ms(metric),
        )

        self.writer.queue_write(INSERT, "interface_history", reading.to_row())

        event = self.detector.check(
            device.id,
            reading.if_index,
            reading.if_name,
            InterfaceSample(reading.oper_status, reading.speed_mbps, reading.timestamp),
        )

        message = {**reading.to_message(), "isFlapping": event is not None}
        await self.cache.set(
            CacheKeys.interface_status(device.id, reading.if_index),
            message,
            ttl=CacheTTL.INTERFACE_STATUS,
        )

        if event is not None:
            self.writer.queue_write(INSERT, "flapping_events", event.to_row())
            await self.pubsub.publish(Channels.ALERT_FLAPPING, event.to_message())

        await self.pubsub.publish(Channels.INTERFACE_UPDATE, message)

    async def _handle_wireless(self, device: Device, metric: dict):
        tags = metric.get("tags") or {}
        fields = metric.get("fields") or {}

        reading = WirelessReading(
            device_id=device.id,
            ssid=tags.get("ubntWlStatSsid") or "",
            signal=_as_int(fields.get("ubntWlStatSignal")),
            noise_floor=_as_int(fields.get("ubntWlStatNoiseFloor")),
            tx_rate=_as_int(fields.get("ubntWlStatTxRate")),
            rx_rate=_as_int(fields.get("ubntWlStatRxRate")),
            timestamp=_timestamp_ms(metric),
        )

        self.writer.queue_write(INSERT, "wireless_stats", reading.to_row())

        message = reading.to_message()
        await self.cache.set(CacheKeys.wireless_status(device.id), message, ttl=CacheTTL.WIRELESS_STATUS)
        await self.pubsub.publish(Channels.WIRELESS_UPDATE, message)
