"""
Device directory for the telemetry pipeline.

Loads the monitored device list and the global default thresholds from a
YAML (or JSON) file. The directory is a read-only collaborator: ingestion
resolves collector addresses through it, nothing writes back.

File layout:
    thresholds:            # optional, merged over built-in defaults
      latency: {good: 50, degraded: 150}
      packetLoss: {good: 1, degraded: 5}
    devices:
      - id: core-sw1
        ip: 10.0.0.1       # ":port" suffix is ignored for matching
        name: Core Switch 1
        areaId: dc1
        snmpEnabled: true
        thresholds:        # optional per-device override
          good: {latency: 20}

Usage:
    from config.devices import DeviceDirectory

    directory = DeviceDirectory.from_file(settings.devices_file)
    device = directory.find_by_address("10.0.0.1:161")
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml

from core.models import Device, Thresholds, strip_port

logger = logging.getLogger(__name__)


class DeviceDirectory:
    """In-memory IP -> Device index plus default thresholds."""

    def __init__(self, devices: Iterable[Device] = (), default_thresholds: Optional[Thresholds] = None):
        self.default_thresholds = default_thresholds or Thresholds()
        self._by_id: Dict[str, Device] = {}
        self._by_address: Dict[str, Device] = {}
        for device in devices:
            self._by_id[device.id] = device
            self._by_address[device.address] = device

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DeviceDirectory":
        data = data or {}
        defaults = Thresholds.from_config(data.get("thresholds"))

        devices = []
        for entry in data.get("devices") or []:
            if not entry.get("id") or not entry.get("ip"):
                logger.warning(f"Skipping device entry without id/ip: {entry}")
                continue
            override = entry.get("thresholds")
            devices.append(Device(
                id=str(entry["id"]),
                ip=str(entry["ip"]),
                name=entry.get("name") or str(entry["id"]),
                area_id=entry.get("areaId", entry.get("area_id")),
                thresholds=Thresholds.from_config(override, base=defaults) if override else None,
                snmp_enabled=bool(entry.get("snmpEnabled", entry.get("snmp_enabled", False))),
            ))

        return cls(devices, defaults)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "DeviceDirectory":
        """Load from YAML/JSON. A missing file yields an empty directory."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Device file {path} not found, starting with no devices")
            return cls()

        # JSON is a subset of YAML, one loader covers both
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        directory = cls.from_dict(data)
        logger.info(f"Loaded {len(directory)} devices from {path}")
        return directory

    def find_by_address(self, address: Optional[str]) -> Optional[Device]:
        if not address:
            return None
        return self._by_address.get(strip_port(address))

    def get(self, device_id: str) -> Optional[Device]:
        return self._by_id.get(device_id)

    def thresholds_for(self, device: Device) -> Thresholds:
        return device.thresholds or self.default_thresholds

    @property
    def devices(self) -> List[Device]:
        return list(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)
