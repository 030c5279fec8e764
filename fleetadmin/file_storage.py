"""
Backup File Storage
===================

This module manages the local side of device database backups: the
backup-point directory tree, per-point metadata, the backup settings record,
and the atomic file writes they rely on.

Features:
- Backup-point tree ``root/region/device/YYYYMMDDHHMMSS/<database-file>``
- Metadata with byte size and SHA256 checksum beside each database copy
- Listing (newest first), latest lookup, deletion and pruning of points
- Atomic temp-file-then-rename writes with a read-back fallback
- Backup settings persisted as JSON with the password encrypted (Fernet)
"""

import hashlib
import json
import logging
import os
import shutil
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any, Union

from cryptography.fernet import Fernet, InvalidToken

from .config import settings
from .error_handling import PreconditionError
from .models import BackupPoint, BackupSettings, BACKUP_TIMESTAMP_FORMAT

# Configure logging
logger = logging.getLogger(__name__)

METADATA_FILE_NAME = "metadata.json"
PathLike = Union[str, Path]


def atomic_write_bytes(path: PathLike, data: bytes):
    """
    Replace ``path`` with ``data`` so readers see the old or the new content.

    The data goes to ``<path>.tmp`` first and is then renamed over the target.
    If the rename fails, the temp file is read back, checked, and written to the
    target directly.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")

    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())

    try:
        os.replace(tmp_path, path)
        return
    except OSError as e:
        logger.warning(f"Rename of {tmp_path} failed ({e}), writing {path} directly")

    with open(tmp_path, "rb") as f:
        staged = f.read()
    if staged != data:
        raise OSError(f"Staged file {tmp_path} does not match the data to write")

    with open(path, "wb") as f:
        f.write(staged)
        f.flush()
        os.fsync(f.fileno())

    try:
        os.remove(tmp_path)
    except OSError as e:
        logger.warning(f"Could not remove {tmp_path}: {e}")


def file_sha256(file_path: PathLike) -> str:
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def is_backup_timestamp(name: str) -> bool:
    if len(name) != 14:
        return False
    try:
        datetime.strptime(name, BACKUP_TIMESTAMP_FORMAT)
        return True
    except ValueError:
        return False


def safe_path_component(name: str, what: str, allow_empty: bool = False) -> str:
    """Reject names that would leave their parent directory."""
    if not name:
        if allow_empty:
            return ""
        raise PreconditionError(f"Empty {what} name")
    if name.startswith(".") or "/" in name or "\\" in name or "\0" in name:
        raise PreconditionError(f"Invalid {what} name: {name!r}")
    return name


class BackupStorage:
    """Local backup-point tree."""

    def __init__(self, root: Optional[PathLike] = None, db_file_name: Optional[str] = None):
        self.root = Path(root or settings.backup_root)
        self.db_file_name = db_file_name or os.path.basename(settings.remote_db_path)

    def region_dir(self, region: str) -> Path:
        return self.root / safe_path_component(region, "region", allow_empty=True)

    def device_dir(self, region: str, device: str) -> Path:
        return self.region_dir(region) / safe_path_component(device, "device")

    def point_dir(self, region: str, device: str, timestamp: str) -> Path:
        return self.device_dir(region, device) / safe_path_component(timestamp, "backup point")

    def create_point_dir(self, region: str, device: str, timestamp: str) -> Path:
        directory = self.point_dir(region, device, timestamp)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def discard_point(self, region: str, device: str, timestamp: str):
        """Remove an incomplete point so it never shows up as a backup."""
        directory = self.point_dir(region, device, timestamp)
        if directory.exists():
            shutil.rmtree(directory)
            logger.info(f"Discarded incomplete backup point {directory}")

    def write_metadata(self, region: str, device: str, timestamp: str) -> Dict[str, Any]:
        directory = self.point_dir(region, device, timestamp)
        db_path = directory / self.db_file_name
        metadata = {
            "timestamp": timestamp,
            "device_ip": device,
            "region": region,
            "backup_type": "database",
            "size_bytes": db_path.stat().st_size,
            "sha256": file_sha256(db_path),
        }
        atomic_write_bytes(directory / METADATA_FILE_NAME, json.dumps(metadata, indent=2).encode("utf-8"))
        return metadata

    def read_metadata(self, point: BackupPoint) -> Optional[Dict[str, Any]]:
        metadata_path = Path(point.path).parent / METADATA_FILE_NAME
        try:
            with open(metadata_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.debug(f"No readable metadata for {point.path}: {e}")
            return None

    def get_backup_point(self, region: str, device: str, timestamp: str) -> BackupPoint:
        """The point for ``timestamp``; PreconditionError if its files are missing."""
        directory = self.point_dir(region, device, timestamp)
        if not directory.is_dir():
            raise PreconditionError(f"Backup point directory not found: {directory}")
        db_path = directory / self.db_file_name
        if not db_path.is_file():
            raise PreconditionError(f"Backup database file not found: {db_path}")
        return BackupPoint(device=device, timestamp=timestamp, path=str(db_path))

    def device_backup_points(self, region: str, device: str) -> List[BackupPoint]:
        """Complete backup points for one device, newest first."""
        device_dir = self.device_dir(region, device)
        if not device_dir.is_dir():
            return []

        points = []
        for entry in device_dir.iterdir():
            if not entry.is_dir() or not is_backup_timestamp(entry.name):
                continue
            db_path = entry / self.db_file_name
            if db_path.is_file():
                points.append(BackupPoint(device=device, timestamp=entry.name, path=str(db_path)))

        points.sort(key=lambda point: point.timestamp, reverse=True)
        return points

    def list_backup_points(self, region: str) -> Dict[str, List[BackupPoint]]:
        region_dir = self.region_dir(region)
        if not region_dir.is_dir():
            return {}

        listing = {}
        for entry in sorted(region_dir.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            points = self.device_backup_points(region, entry.name)
            if points:
                listing[entry.name] = points
        return listing

    def latest_backup_point(self, region: str, device: str) -> Optional[BackupPoint]:
        points = self.device_backup_points(region, device)
        return points[0] if points else None

    def delete_backup_point(self, region: str, device: str, timestamp: str):
        if not is_backup_timestamp(timestamp):
            raise PreconditionError(f"Invalid backup timestamp: {timestamp}")
        directory = self.point_dir(region, device, timestamp)
        if not directory.is_dir():
            raise PreconditionError(f"Backup point not found: {directory}")
        shutil.rmtree(directory)
        logger.info(f"Deleted backup point {directory}")

    def prune(self, region: str, device: str, keep: int) -> int:
        """Delete all but the newest ``keep`` points; returns how many were deleted."""
        points = self.device_backup_points(region, device)
        stale = points[max(keep, 0):]
        for point in stale:
            self.delete_backup_point(region, device, point.timestamp)
        return len(stale)


class CredentialCipher:
    """Encrypts stored credentials with a Fernet key."""

    def __init__(self, key: Optional[bytes] = None, key_file: Optional[PathLike] = None):
        self._fernet = Fernet(key or self._load_or_create_key(key_file))

    @staticmethod
    def _load_or_create_key(key_file: Optional[PathLike]) -> bytes:
        if key_file is None:
            return Fernet.generate_key()

        key_file = Path(key_file)
        if key_file.exists():
            return key_file.read_bytes().strip()

        key = Fernet.generate_key()
        atomic_write_bytes(key_file, key)
        os.chmod(key_file, 0o600)
        logger.info(f"Generated credential key at {key_file}")
        return key

    def encrypt(self, value: str) -> str:
        if not value:
            return ""
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        if not value:
            return ""
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("Stored password could not be decrypted, ignoring it")
            return ""


class BackupSettingsStore:
    """Backup settings record persisted as JSON."""

    def __init__(self, path: PathLike, cipher: CredentialCipher):
        self.path = Path(path)
        self.cipher = cipher

    def defaults(self) -> BackupSettings:
        return BackupSettings(
            storage_folder=settings.backup_root,
            region_name="",
            username=settings.default_ssh_username,
            password=settings.default_ssh_password,
        )

    def load(self) -> BackupSettings:
        if not self.path.exists():
            return self.defaults()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read backup settings {self.path}: {e}")
            return self.defaults()

        defaults = self.defaults()
        return BackupSettings(
            storage_folder=data.get("storageFolder") or defaults.storage_folder,
            region_name=data.get("regionName", ""),
            username=data.get("username") or defaults.username,
            password=self.cipher.decrypt(data.get("password", "")),
        )

    def save(self, backup_settings: BackupSettings):
        data = {
            "storageFolder": backup_settings.storage_folder,
            "regionName": backup_settings.region_name,
            "username": backup_settings.username,
            "password": self.cipher.encrypt(backup_settings.password),
        }
        atomic_write_bytes(self.path, json.dumps(data, indent=2).encode("utf-8"))
        logger.info(f"Saved backup settings to {self.path}")

    @staticmethod
    def to_public_dict(backup_settings: BackupSettings) -> Dict[str, Any]:
        data = asdict(backup_settings)
        data["password"] = "********" if backup_settings.password else ""
        return data
