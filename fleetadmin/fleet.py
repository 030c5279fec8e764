"""
Fleet Manager
=============

Builds every component from settings and exposes the operations the API
layer calls.

Features:
- Registry, probe, scanner, firmware updater, backup/restore, time sync and
  camera configurator sharing one HTTP session and one registry
- Device-set resolution from identities
- Backup settings persisted with every bulk backup or restore
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from .backup_executor import BackupExecutor
from .camera_config import CameraBatchConfigurator
from .config import Settings, settings as default_settings
from .database import create_session_factory
from .device_probe import DeviceProbe, HttpDeviceProbe
from .error_handling import DeviceNotFoundError
from .file_storage import BackupSettingsStore, BackupStorage, CredentialCipher
from .firmware import FirmwareUpdater
from .models import (
    BackupResult, BackupSettings, CameraConfigResult, CameraRow, Device,
    RestoreResult, TimeSyncResult, UpdateRequest, UpdateResult,
)
from .registry import DeviceRegistry
from .scanner import Scanner
from .ssh_connection import SSHConnectionManager
from .time_sync import TimeSynchronizer

logger = logging.getLogger(__name__)

BACKUP_SETTINGS_FILE = "backup_settings.json"
SECRET_KEY_FILE = "secret.key"


class FleetManager:
    """Entry point that owns all fleet components."""

    def __init__(self, config: Optional[Settings] = None, probe: Optional[DeviceProbe] = None,
                 connector=None, session_factory=None):
        self.config = config or default_settings
        config_dir = Path(self.config.config_dir)
        config_dir.mkdir(parents=True, exist_ok=True)

        self.session_factory = session_factory or create_session_factory(self.config.resolved_database_url)
        self.registry = DeviceRegistry(self.session_factory, config_dir=str(config_dir))
        self.probe = probe or HttpDeviceProbe(port=self.config.device_http_port)

        self.ssh_manager = SSHConnectionManager(port=self.config.ssh_port, timeout=self.config.ssh_timeout,
                                                connect_attempts=self.config.ssh_connect_attempts,
                                                command_timeout=self.config.ssh_command_timeout)
        self.connector = connector or self.ssh_manager.session

        self.scanner = Scanner(self.probe, self.registry, max_workers=self.config.scan_concurrency)
        self.firmware = FirmwareUpdater(self.probe, max_workers=self.config.operation_concurrency)
        self.backups = BackupExecutor(self.connector, max_workers=self.config.operation_concurrency,
                                      service=self.config.remote_service,
                                      remote_db_path=self.config.remote_db_path,
                                      settle_seconds=self.config.service_settle_seconds)
        self.time_sync = TimeSynchronizer(self.connector, max_workers=self.config.operation_concurrency)
        self.cameras = CameraBatchConfigurator(self.probe, registry=self.registry,
                                               max_workers=self.config.operation_concurrency,
                                               settle_seconds=self.config.camera_settle_seconds)

        key = self.config.secret_key.encode() if self.config.secret_key else None
        cipher = CredentialCipher(key=key, key_file=config_dir / SECRET_KEY_FILE)
        self.backup_settings = BackupSettingsStore(config_dir / BACKUP_SETTINGS_FILE, cipher)

    def start(self):
        self.registry.load()
        logger.info("Fleet manager started")

    def close(self):
        close = getattr(self.probe, "close", None)
        if close:
            close()
        logger.info("Fleet manager stopped")

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def resolve_devices(self, identities: Optional[List[str]]) -> List[Device]:
        """Registry devices for the given identities; all visible devices when None."""
        if identities is None:
            return self.registry.get()
        devices = []
        for identity in identities:
            device = self.registry.get_device(identity)
            if device is None:
                raise DeviceNotFoundError(f"Device {identity} not found")
            devices.append(device)
        return devices

    def remove_devices(self, identities: List[str]):
        """
        Remove devices; every identity must exist before anything is touched.

        Devices left in the registry after a failure get their prior status back.
        """
        self.resolve_devices(identities)
        previous = self.registry.mark_removing(identities)
        try:
            for identity in dict.fromkeys(identities):
                self.registry.remove(identity)
        finally:
            self.registry.restore_statuses(previous)

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def update_firmware(self, identities: Optional[List[str]], username: str, password: str,
                        file_path: Optional[str], md5_path: Optional[str] = None,
                        build_time_filter: Optional[str] = None) -> List[UpdateResult]:
        request = UpdateRequest(
            devices=self.resolve_devices(identities),
            username=username,
            password=password,
            file_path=file_path,
            md5_path=md5_path,
            build_time_filter=build_time_filter,
        )
        return self.firmware.update(request)

    def _remember_settings(self, backup_settings: BackupSettings):
        try:
            self.backup_settings.save(backup_settings)
        except OSError as e:
            logger.warning(f"Could not save backup settings: {e}")

    def backup(self, identities: Optional[List[str]], backup_settings: BackupSettings) -> List[BackupResult]:
        self._remember_settings(backup_settings)
        return self.backups.backup(
            self.resolve_devices(identities),
            backup_settings.username,
            backup_settings.password,
            backup_settings.storage_folder,
            region=backup_settings.region_name,
        )

    def restore(self, identities: Optional[List[str]], backup_settings: BackupSettings,
                backup_points: Dict[str, str]) -> List[RestoreResult]:
        self._remember_settings(backup_settings)
        return self.backups.restore(
            self.resolve_devices(identities),
            backup_settings.username,
            backup_settings.password,
            backup_points,
            backup_settings.storage_folder,
            region=backup_settings.region_name,
        )

    def backup_storage(self, backup_settings: Optional[BackupSettings] = None) -> BackupStorage:
        backup_settings = backup_settings or self.backup_settings.load()
        return BackupStorage(backup_settings.storage_folder,
                             db_file_name=Path(self.config.remote_db_path).name)

    def sync_time(self, identities: Optional[List[str]], username: str, password: str) -> List[TimeSyncResult]:
        return self.time_sync.sync(self.resolve_devices(identities), username, password)

    def configure_cameras(self, rows: List[CameraRow], username: str, password: str,
                          url_template: str, algorithm_type: int, region: str = "") -> List[CameraConfigResult]:
        return self.cameras.configure(rows, username, password, url_template, algorithm_type, region)
