"""
Device Scanner
==============

Sweeps an IPv4 range or the known device list with the device probe, using the
bounded orchestrator, and folds the answers back into the registry.

Features:
- Range scan with address-count limit and de-duplication by ip
- Refresh of the visible devices (unreachable ones become offline, never removed)
- Probe-then-add for a single address
"""

import ipaddress
import logging
from typing import List, Optional

from .config import settings
from .device_probe import DeviceProbe
from .error_handling import PreconditionError
from .models import Device, DeviceStatus, ScanResult
from .orchestrator import run_bounded
from .registry import DeviceRegistry

logger = logging.getLogger(__name__)


def expand_ip_range(start_ip: str, end_ip: str, limit: Optional[int] = None) -> List[str]:
    """Every IPv4 address from ``start_ip`` to ``end_ip`` inclusive."""
    limit = limit or settings.max_scan_addresses
    try:
        start = ipaddress.IPv4Address(start_ip.strip())
        end = ipaddress.IPv4Address(end_ip.strip())
    except ValueError as e:
        raise PreconditionError(f"Invalid IP address: {e}")

    if start > end:
        raise PreconditionError("Start IP must be less than or equal to end IP")

    count = int(end) - int(start) + 1
    if count > limit:
        raise PreconditionError(f"IP range too large: {count} addresses (limit {limit})")

    return [str(ipaddress.IPv4Address(value)) for value in range(int(start), int(end) + 1)]


class Scanner:
    """Range scan and refresh on top of a device probe."""

    def __init__(self, probe: DeviceProbe, registry: DeviceRegistry, max_workers: Optional[int] = None):
        self.probe = probe
        self.registry = registry
        self.max_workers = max_workers or settings.scan_concurrency

    def _probe(self, ip: str) -> ScanResult:
        device = self.probe.test_device(ip)
        return ScanResult(target=ip, success=True, message="online", device=device)

    @staticmethod
    def _probe_failed(ip: str, error: Exception) -> ScanResult:
        return ScanResult(target=ip, success=False, message=str(error))

    def probe_all(self, ips: List[str]) -> List[ScanResult]:
        """One ScanResult per address, reachable or not."""
        return run_bounded(ips, self._probe, self._probe_failed, self.max_workers, label="scan")

    def scan_range(self, start_ip: str, end_ip: str, region: str = "") -> List[Device]:
        """
        Probe every address in the range and upsert the devices that answered.

        Returns the online devices, one per ip. Addresses that did not answer are
        neither returned nor added.
        """
        ips = expand_ip_range(start_ip, end_ip)
        results = self.probe_all(ips)

        found = {}
        for result in results:
            if result.success and result.device is not None and result.device.ip:
                found.setdefault(result.device.ip, result.device)

        merged = []
        for ip in ips:
            scanned = found.get(ip)
            if scanned is None:
                continue
            existing = self.registry.find_by_region_and_ip(region, ip)
            if existing is not None:
                merged.append(existing.copy(status=DeviceStatus.ONLINE, build_time=scanned.build_time))
            else:
                merged.append(Device(ip=ip, build_time=scanned.build_time,
                                     status=DeviceStatus.ONLINE, region=region))

        logger.info(f"Scan {start_ip}-{end_ip}: {len(merged)} of {len(ips)} addresses online")
        return self.registry.add_many(merged)

    def _refresh_one(self, device: Device) -> Device:
        probed = self.probe.test_device(device.ip)
        return device.copy(status=DeviceStatus.ONLINE, build_time=probed.build_time)

    @staticmethod
    def _refresh_failed(device: Device, error: Exception) -> Device:
        logger.debug(f"Device {device.ip} did not answer refresh: {error}")
        return device.copy(status=DeviceStatus.OFFLINE)

    def refresh(self, devices: Optional[List[Device]] = None) -> List[Device]:
        """Re-probe devices (default: the visible ones) and persist their status."""
        if devices is None:
            devices = self.registry.get()
        refreshed = run_bounded(devices, self._refresh_one, self._refresh_failed,
                                self.max_workers, label="refresh")
        self.registry.update_statuses(refreshed)
        return refreshed

    def test_and_add(self, ip: str, region: str = "") -> Device:
        """Probe one address and add it; an unreachable device is never added."""
        probed = self.probe.test_device(ip.strip())
        existing = self.registry.find_by_region_and_ip(region, probed.ip)
        if existing is not None:
            device = existing.copy(status=DeviceStatus.ONLINE, build_time=probed.build_time)
        else:
            device = probed.copy(region=region, status=DeviceStatus.ONLINE)
        logger.info(f"Adding device {device.ip} in region '{region}'")
        return self.registry.add(device)
