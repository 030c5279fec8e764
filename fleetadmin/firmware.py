"""
Firmware Updater
================

Pushes one firmware image to many devices. Each orchestrator worker logs in to
its device and uploads the image as multipart/form-data with the session token
in the request header.

Features:
- Upload path carried explicitly by ``UpdateRequest``
- Optional companion .md5 file sent as the ``md5file`` field
- Optional build-time filter over the selected devices
- Adaptive upload timeout: max(30s, 10s per MB)
- Precondition failures reported as a single synthetic result
"""

import logging
import os
from typing import List, Optional

from .config import settings
from .device_probe import DeviceProbe
from .error_handling import DeviceLoginError, DeviceUnreachableError, PreconditionError
from .models import Device, UpdateRequest, UpdateResult
from .orchestrator import run_bounded

logger = logging.getLogger(__name__)

UPGRADE_PATH = "/api/system/upgrade"
BYTES_PER_MB = 1024 * 1024


def compute_upload_timeout(size_bytes: int, minimum: Optional[float] = None,
                           seconds_per_mb: Optional[float] = None) -> float:
    """Upload timeout in seconds for a file of ``size_bytes``."""
    minimum = settings.upload_min_timeout if minimum is None else minimum
    seconds_per_mb = settings.upload_seconds_per_mb if seconds_per_mb is None else seconds_per_mb
    return max(float(minimum), seconds_per_mb * size_bytes / BYTES_PER_MB)


def _precondition_failure(message: str) -> List[UpdateResult]:
    logger.warning(f"Firmware update rejected: {message}")
    return [UpdateResult(target="", success=False, message=message)]


class FirmwareUpdater:
    """Login-then-upload firmware push over the orchestrator."""

    def __init__(self, probe: DeviceProbe, max_workers: Optional[int] = None):
        self.probe = probe
        self.max_workers = max_workers or settings.operation_concurrency

    def _resolve_md5(self, request: UpdateRequest) -> Optional[str]:
        if request.md5_path:
            if not os.path.isfile(request.md5_path):
                raise PreconditionError(f"MD5 file not found: {request.md5_path}")
            return request.md5_path
        companion = f"{request.file_path}.md5"
        return companion if os.path.isfile(companion) else None

    def _select_devices(self, request: UpdateRequest) -> List[Device]:
        if not request.build_time_filter:
            return list(request.devices)
        return [device for device in request.devices if device.build_time == request.build_time_filter]

    def update(self, request: UpdateRequest) -> List[UpdateResult]:
        """Push the request's firmware image to its devices; one result per device."""
        if not request.file_path:
            return _precondition_failure("No file selected for upload")
        if not os.path.isfile(request.file_path):
            return _precondition_failure(f"File not found: {request.file_path}")

        size = os.path.getsize(request.file_path)
        if size == 0:
            return _precondition_failure(f"File is empty: {request.file_path}")

        try:
            md5_path = self._resolve_md5(request)
        except PreconditionError as e:
            return _precondition_failure(str(e))

        devices = self._select_devices(request)
        if not devices:
            return _precondition_failure("No devices selected for update")

        timeout = compute_upload_timeout(size)
        files = {"binary": request.file_path}
        if md5_path:
            files["md5file"] = md5_path

        logger.info(f"Updating {len(devices)} devices with {os.path.basename(request.file_path)} "
                    f"({size} bytes, timeout {timeout:.0f}s)")

        def upload_one(device: Device) -> UpdateResult:
            return self._update_device(device, request.username, request.password, files, timeout)

        def failed(device: Device, error: Exception) -> UpdateResult:
            return UpdateResult(target=device.ip, identity=device.identity, success=False, message=str(error))

        return run_bounded(devices, upload_one, failed, self.max_workers, label="firmware-update")

    def update_devices(self, devices: List[Device], username: str, password: str,
                       file_path: Optional[str], md5_path: Optional[str] = None) -> List[UpdateResult]:
        return self.update(UpdateRequest(devices=devices, username=username, password=password,
                                         file_path=file_path, md5_path=md5_path))

    def _update_device(self, device: Device, username: str, password: str,
                       files: dict, timeout: float) -> UpdateResult:
        try:
            token = self.probe.login(device.ip, username, password)
        except (DeviceLoginError, DeviceUnreachableError) as e:
            logger.warning(f"Login to {device.ip} failed: {e}")
            return UpdateResult(target=device.ip, identity=device.identity, success=False,
                                message=f"login failed: {e}")

        body = self.probe.upload(device.ip, UPGRADE_PATH, token, files, timeout)
        if body.get("code") != 0:
            return UpdateResult(target=device.ip, identity=device.identity, success=False,
                                message=f"Update rejected by device: {body.get('msg', '')}")

        logger.info(f"Firmware uploaded to {device.ip}")
        return UpdateResult(target=device.ip, identity=device.identity, success=True,
                            message="Update successful")
