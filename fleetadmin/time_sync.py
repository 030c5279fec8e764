"""
Sets each device's system and hardware clock to this host's local time over SSH.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .config import settings
from .models import Device, TimeSyncResult
from .orchestrator import run_bounded

logger = logging.getLogger(__name__)


def date_command(moment: datetime) -> str:
    """BusyBox/coreutils ``date MMDDhhmmYYYY.ss`` followed by a hardware clock write."""
    return f"date {moment.strftime('%m%d%H%M%Y.%S')} && hwclock -w"


class TimeSynchronizer:
    """Pushes one captured local time to many devices."""

    def __init__(self, connector: Callable, max_workers: Optional[int] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.connector = connector
        self.max_workers = max_workers or settings.operation_concurrency
        self.clock = clock

    def sync(self, devices: List[Device], username: str, password: str) -> List[TimeSyncResult]:
        if not devices:
            return [TimeSyncResult(target="", success=False, message="No devices selected for time sync")]

        moment = self.clock()
        command = date_command(moment)
        stamp = moment.strftime("%Y-%m-%d %H:%M:%S")
        logger.info(f"Synchronising {len(devices)} devices to {stamp}")

        def sync_one(device: Device) -> TimeSyncResult:
            with self.connector(device.ip, username, password) as shell:
                shell.execute(command)
            return TimeSyncResult(target=device.ip, success=True, message="Time synchronised", timestamp=stamp)

        def failed(device: Device, error: Exception) -> TimeSyncResult:
            return TimeSyncResult(target=device.ip, success=False,
                                  message=f"Time sync failed: {error}", timestamp=stamp)

        return run_bounded(devices, sync_one, failed, self.max_workers, label="time-sync")
