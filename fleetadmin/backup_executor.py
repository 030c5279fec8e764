"""
Device Database Backup/Restore Engine
=====================================

This module backs up and restores the on-device application database over SSH.
Each device runs in its own orchestrator worker through an explicit state machine.

Backup:  connect -> stop service -> copy database out -> start service
Restore: connect -> stop service -> copy live database aside -> transfer
         backup in -> start service

Features:
- The remote service is always started again, on success and on failure
- A failed restore transfer puts the copied-aside database back first
- Backup points are checked on local disk before any device is touched
- Incomplete backup points are discarded
- Per-device isolation: a failing device never aborts the batch
"""

import logging
import shlex
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .config import settings
from .error_handling import PreconditionError
from .file_storage import BackupStorage
from .models import BackupPoint, BackupResult, Device, RestoreResult, BACKUP_TIMESTAMP_FORMAT
from .orchestrator import run_bounded
from .remote_transfer import pull_file, push_file
from .ssh_connection import RemoteShell

# Configure logging
logger = logging.getLogger(__name__)


class BackupExecutor:
    """SSH backup and restore of the device database."""

    def __init__(self, connector: Callable, max_workers: Optional[int] = None,
                 service: Optional[str] = None, remote_db_path: Optional[str] = None,
                 settle_seconds: Optional[float] = None, sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            connector: callable ``(ip, username, password)`` returning a context
                manager that yields a RemoteShell
            sleep: wait function used after stopping the service
        """
        self.connector = connector
        self.max_workers = max_workers or settings.operation_concurrency
        self.service = service or settings.remote_service
        self.remote_db_path = remote_db_path or settings.remote_db_path
        self.settle_seconds = settings.service_settle_seconds if settle_seconds is None else settle_seconds
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Service control
    # ------------------------------------------------------------------

    def _stop_service(self, shell: RemoteShell):
        shell.execute(f"systemctl stop {shlex.quote(self.service)}")
        logger.info(f"Stopped {self.service} on {shell.ip_address}")
        if self.settle_seconds:
            self.sleep(self.settle_seconds)

    def _start_service(self, shell: RemoteShell):
        shell.execute(f"systemctl start {shlex.quote(self.service)}")
        logger.info(f"Started {self.service} on {shell.ip_address}")

    def _start_service_best_effort(self, shell: RemoteShell) -> Optional[str]:
        try:
            self._start_service(shell)
            return None
        except Exception as e:
            logger.error(f"Could not restart {self.service} on {shell.ip_address}: {e}")
            return str(e)

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def backup(self, devices: List[Device], username: str, password: str,
               dest_root: str, region: str = "") -> List[BackupResult]:
        """Back up each device's database under ``dest_root/region/<ip>/<timestamp>``."""
        if not devices:
            return [BackupResult(target="", success=False, message="No devices selected for backup")]
        if not dest_root:
            return [BackupResult(target="", success=False, message="No backup folder configured")]

        storage = BackupStorage(dest_root, db_file_name=self._db_file_name())

        def backup_one(device: Device) -> BackupResult:
            return self._backup_device(device, username, password, storage, region)

        def failed(device: Device, error: Exception) -> BackupResult:
            return BackupResult(target=device.ip, success=False, message=f"Backup failed: {error}")

        return run_bounded(devices, backup_one, failed, self.max_workers, label="backup")

    def _backup_device(self, device: Device, username: str, password: str,
                       storage: BackupStorage, region: str) -> BackupResult:
        storage.device_dir(region, device.ip)
        timestamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)

        with self.connector(device.ip, username, password) as shell:
            self._stop_service(shell)

            try:
                point_dir = storage.create_point_dir(region, device.ip, timestamp)
                local_path = point_dir / storage.db_file_name
                pull_file(shell, self.remote_db_path, str(local_path))
            except Exception:
                storage.discard_point(region, device.ip, timestamp)
                self._start_service_best_effort(shell)
                raise

            restart_error = self._start_service_best_effort(shell)

        storage.write_metadata(region, device.ip, timestamp)
        message = "Backup successful"
        if restart_error:
            return BackupResult(target=device.ip, success=False, timestamp=timestamp,
                                backup_path=str(local_path),
                                message=f"Backup saved but service restart failed: {restart_error}")
        return BackupResult(target=device.ip, success=True, message=message,
                            timestamp=timestamp, backup_path=str(local_path))

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, devices: List[Device], username: str, password: str,
                backup_points: Dict[str, str], backup_root: str, region: str = "") -> List[RestoreResult]:
        """
        Restore each device from a local backup point.

        ``backup_points`` maps device ip (or identity) to a backup timestamp; a
        device without an entry uses its latest point.
        """
        if not devices:
            return [RestoreResult(target="", success=False, message="No devices selected for restore")]

        storage = BackupStorage(backup_root, db_file_name=self._db_file_name())

        def restore_one(device: Device) -> RestoreResult:
            point = self._resolve_point(storage, device, backup_points, region)
            return self._restore_device(device, username, password, point)

        def failed(device: Device, error: Exception) -> RestoreResult:
            return RestoreResult(target=device.ip, success=False, message=f"Restore failed: {error}")

        return run_bounded(devices, restore_one, failed, self.max_workers, label="restore")

    @staticmethod
    def _resolve_point(storage: BackupStorage, device: Device, backup_points: Dict[str, str],
                       region: str) -> BackupPoint:
        timestamp = backup_points.get(device.ip) or backup_points.get(device.identity)
        if timestamp:
            return storage.get_backup_point(region, device.ip, timestamp)

        point = storage.latest_backup_point(region, device.ip)
        if point is None:
            raise PreconditionError(f"No backup point available for {device.ip}")
        return point

    def _restore_device(self, device: Device, username: str, password: str,
                        point: BackupPoint) -> RestoreResult:
        remote_db = self.remote_db_path
        aside = f"{remote_db}.bak.{datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)}"

        with self.connector(device.ip, username, password) as shell:
            self._stop_service(shell)

            try:
                shell.execute(f"cp {shlex.quote(remote_db)} {shlex.quote(aside)}")
            except Exception:
                self._start_service_best_effort(shell)
                raise

            try:
                push_file(shell, point.path, remote_db)
            except Exception as e:
                rollback = self._rollback(shell, aside, remote_db)
                restart_error = self._start_service_best_effort(shell)
                message = f"Restore failed: {e}; {rollback}"
                if restart_error:
                    message += f"; service restart failed: {restart_error}"
                return RestoreResult(target=device.ip, success=False, message=message,
                                     backup_point=point.timestamp)

            restart_error = self._start_service_best_effort(shell)

        if restart_error:
            return RestoreResult(target=device.ip, success=False, backup_point=point.timestamp,
                                 message=f"Database restored but service restart failed: {restart_error}")
        logger.info(f"Restored {device.ip} from backup point {point.timestamp}")
        return RestoreResult(target=device.ip, success=True, message="Restore successful",
                             backup_point=point.timestamp)

    def _rollback(self, shell: RemoteShell, aside: str, remote_db: str) -> str:
        try:
            shell.execute(f"cp {shlex.quote(aside)} {shlex.quote(remote_db)}")
            logger.warning(f"Rolled back {remote_db} on {shell.ip_address} from {aside}")
            return "previous database put back"
        except Exception as e:
            logger.error(f"Rollback on {shell.ip_address} failed: {e}")
            return f"rollback failed, previous database kept at {aside}"

    def _db_file_name(self) -> str:
        return self.remote_db_path.rsplit("/", 1)[-1]
