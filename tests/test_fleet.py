"""
Unit tests for FleetManager device removal.
"""

from unittest.mock import patch

import pytest

from fleetadmin.config import Settings
from fleetadmin.error_handling import DeviceNotFoundError, PersistenceError
from fleetadmin.fleet import FleetManager
from fleetadmin.models import Device, DeviceStatus


@pytest.fixture
def fleet(tmp_path, fake_probe, connector):
    config = Settings(config_dir=str(tmp_path / "config"), backup_root=str(tmp_path / "backups"))
    fleet = FleetManager(config, probe=fake_probe(), connector=connector)
    fleet.start()
    return fleet


class TestRemoveDevices:
    """Tests for FleetManager.remove_devices"""

    def test_removes_every_listed_device(self, fleet):
        first = fleet.registry.add(Device(ip="10.0.0.1"))
        second = fleet.registry.add(Device(ip="10.0.0.2"))

        fleet.remove_devices([first.identity, second.identity, first.identity])

        assert len(fleet.registry) == 0

    def test_unknown_identity_touches_nothing(self, fleet):
        """An unknown identity fails the call before any device is marked or removed"""
        device = fleet.registry.add(Device(ip="10.0.0.1", status=DeviceStatus.ONLINE))

        with pytest.raises(DeviceNotFoundError):
            fleet.remove_devices(["missing-id", device.identity])

        assert fleet.registry.get_device(device.identity).status == DeviceStatus.ONLINE

    def test_failed_removal_restores_status(self, fleet):
        """Devices still present after a store fault are not left in removing"""
        first = fleet.registry.add(Device(ip="10.0.0.1", status=DeviceStatus.ONLINE))
        second = fleet.registry.add(Device(ip="10.0.0.2", status=DeviceStatus.OFFLINE))

        with patch.object(fleet.registry, "remove", side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError):
                fleet.remove_devices([first.identity, second.identity])

        assert fleet.registry.get_device(first.identity).status == DeviceStatus.ONLINE
        assert fleet.registry.get_device(second.identity).status == DeviceStatus.OFFLINE
