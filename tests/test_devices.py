"""Tests for the device directory."""

from config.devices import DeviceDirectory


class TestDeviceDirectory:
    def test_find_by_address(self, directory):
        device = directory.find_by_address("10.0.0.1")
        assert device is not None
        assert device.id == "core-sw1"
        assert device.area_id == "dc1"

    def test_port_stripped_on_both_sides(self, directory):
        # configured as 10.0.0.254:161
        assert directory.find_by_address("10.0.0.254").id == "edge-rtr1"
        # collector reports with a port
        assert directory.find_by_address("10.0.0.1:161").id == "core-sw1"

    def test_unknown_address(self, directory):
        assert directory.find_by_address("192.0.2.99") is None
        assert directory.find_by_address("") is None
        assert directory.find_by_address(None) is None

    def test_device_override_merges_over_file_defaults(self, directory):
        edge = directory.get("edge-rtr1")
        thresholds = directory.thresholds_for(edge)
        assert thresholds.good.latency == 20
        assert thresholds.degraded.latency == 150

    def test_devices_without_override_use_defaults(self, directory):
        core = directory.get("core-sw1")
        assert directory.thresholds_for(core) is directory.default_thresholds

    def test_entries_without_ip_are_skipped(self):
        directory = DeviceDirectory.from_dict({"devices": [{"id": "x"}, {"id": "y", "ip": "10.1.1.1"}]})
        assert len(directory) == 1
        assert directory.get("x") is None

    def test_load_yaml_file(self, tmp_path):
        path = tmp_path / "devices.yaml"
        path.write_text(
            "devices:\n"
            "  - id: sw1\n"
            "    ip: 10.9.9.9\n"
            "    snmpEnabled: true\n"
        )
        directory = DeviceDirectory.from_file(path)
        assert len(directory) == 1
        assert directory.get("sw1").snmp_enabled is True

    def test_load_json_file(self, tmp_path):
        path = tmp_path / "devices.json"
        path.write_text('{"devices": [{"id": "sw2", "ip": "10.8.8.8"}]}')
        assert DeviceDirectory.from_file(path).get("sw2").ip == "10.8.8.8"

    def test_missing_file_is_empty(self, tmp_path):
        assert len(DeviceDirectory.from_file(tmp_path / "nope.yaml")) == 0
