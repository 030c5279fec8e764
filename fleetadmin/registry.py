"""
Device Registry
===============

Owns the authoritative device collection: an in-memory cache keyed by device
identity, a materialized region-filtered view, and the durable SQLAlchemy store
the cache is rebuilt from at startup.

Features:
- Upsert-by-identity add, removal, region assignment (single and bulk)
- Region filter with wildcard membership for devices without a region
- Single registry-wide lock; store I/O happens after the lock is released
- One-time import of the legacy ``devices.json`` flat file
- Store faults surface as PersistenceError to writers, never to readers
"""

import json
import logging
import os
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .database import DeviceRecord
from .error_handling import PersistenceError, DeviceNotFoundError
from .models import Device, DeviceStatus

logger = logging.getLogger(__name__)

LEGACY_FILE_NAME = "devices.json"
IPV4_PATTERN = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")


def _to_device(record: DeviceRecord) -> Device:
    try:
        status = DeviceStatus(record.status)
    except ValueError:
        status = DeviceStatus.OFFLINE
    return Device(
        identity=record.id,
        ip=record.ip,
        build_time=record.build_time or "",
        status=status,
        region=record.region or "",
    )


def _stored_status(device: Device) -> str:
    if device.status == DeviceStatus.REMOVING:
        return DeviceStatus.OFFLINE.value
    return device.status.value


class DeviceRegistry:
    """Device collection with a durable store and a region-filtered view."""

    def __init__(self, session_factory, config_dir: Optional[str] = None):
        self._session_factory = session_factory
        self.config_dir = Path(config_dir) if config_dir else None
        self._lock = threading.RLock()
        self._devices: Dict[str, Device] = {}
        self._region = ""
        self._visible: List[Device] = []

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Run the legacy import if needed, then rebuild the cache from the store."""
        try:
            if self.config_dir is not None:
                self.import_legacy(self.config_dir / LEGACY_FILE_NAME)
        except PersistenceError as e:
            logger.error(f"Legacy import failed, file left in place: {e}")

        try:
            with self._store() as session:
                records = session.query(DeviceRecord).order_by(DeviceRecord.created_at).all()
                devices = [_to_device(record) for record in records]
        except PersistenceError:
            logger.error("Could not load devices from the store, starting with an empty registry")
            devices = []

        with self._lock:
            self._devices = {device.identity: device for device in devices}
            self._recompute_view()

        logger.info(f"Loaded {len(devices)} devices")
        return len(devices)

    def import_legacy(self, legacy_path: Path) -> int:
        """
        Import a legacy devices.json into an empty store.

        The file is renamed to ``devices.json.bak.<unix-ts>`` afterwards and is
        never deleted. Returns the number of imported devices.
        """
        legacy_path = Path(legacy_path)
        if not legacy_path.exists():
            return 0

        with self._store() as session:
            existing = session.query(DeviceRecord).count()

        if existing:
            logger.info(f"Store already holds {existing} devices, skipping legacy import")
            self._archive_legacy(legacy_path)
            return 0

        try:
            with open(legacy_path, "r", encoding="utf-8") as f:
                entries = json.load(f)
            devices = {}
            for entry in entries:
                if not entry.get("ip"):
                    continue
                device = Device.from_dict(entry)
                if device.identity in devices:
                    logger.warning(f"Skipping duplicate legacy entry {device.identity} ({device.ip})")
                    continue
                devices[device.identity] = device
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Could not parse legacy device file {legacy_path}: {e}")
            return 0

        with self._store() as session:
            for device in devices.values():
                self._write(session, device)

        self._archive_legacy(legacy_path)
        logger.info(f"Imported {len(devices)} devices from {legacy_path}")
        return len(devices)

    @staticmethod
    def _archive_legacy(legacy_path: Path):
        stamp = int(time.time())
        backup_path = legacy_path.with_name(f"{legacy_path.name}.bak.{stamp}")
        while backup_path.exists():
            stamp += 1
            backup_path = legacy_path.with_name(f"{legacy_path.name}.bak.{stamp}")
        try:
            os.replace(legacy_path, backup_path)
            logger.info(f"Legacy device file moved to {backup_path}")
        except OSError as e:
            logger.warning(f"Could not rename legacy device file {legacy_path}: {e}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def current_region(self) -> str:
        with self._lock:
            return self._region

    def get(self) -> List[Device]:
        """Devices visible under the current region filter."""
        with self._lock:
            return [device.copy() for device in self._visible]

    def get_all(self) -> List[Device]:
        with self._lock:
            return [device.copy() for device in self._devices.values()]

    def get_device(self, identity: str) -> Optional[Device]:
        with self._lock:
            device = self._devices.get(identity)
            return device.copy() if device else None

    def find_by_region_and_ip(self, region: str, ip: str) -> Optional[Device]:
        """Exact region+ip match; an empty region matches on ip alone."""
        with self._lock:
            for device in self._devices.values():
                if device.ip == ip and (not region or device.region == region):
                    return device.copy()
        return None

    def find_by_ip(self, ip: str) -> List[Device]:
        with self._lock:
            return [device.copy() for device in self._devices.values() if device.ip == ip]

    def get_regions(self) -> List[str]:
        with self._lock:
            return sorted({device.region for device in self._devices.values() if device.region})

    def __len__(self):
        with self._lock:
            return len(self._devices)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_region_filter(self, region: str):
        with self._lock:
            self._region = region or ""
            self._recompute_view()
        logger.debug(f"Region filter set to '{region}'")

    def add(self, device: Device) -> Device:
        """Insert or overwrite the device with the same identity."""
        stored = device.copy()
        with self._lock:
            self._devices[stored.identity] = stored
            self._recompute_view()

        self._persist([stored])
        return stored.copy()

    def add_many(self, devices: Iterable[Device]) -> List[Device]:
        """Upsert several devices in one transaction."""
        stored = [device.copy() for device in devices]
        with self._lock:
            for device in stored:
                self._devices[device.identity] = device
            self._recompute_view()

        self._persist(stored)
        return [device.copy() for device in stored]

    def update_statuses(self, devices: Iterable[Device]) -> List[Device]:
        """
        Apply refreshed status and build time to devices still in the registry.

        Devices removed while the refresh was in flight are not brought back.
        """
        changed = []
        with self._lock:
            for device in devices:
                current = self._devices.get(device.identity)
                if current is None:
                    continue
                current.status = device.status
                current.build_time = device.build_time
                changed.append(current.copy())
            self._recompute_view()

        self._persist(changed)
        return changed

    def mark_removing(self, identities: Iterable[str]) -> Dict[str, DeviceStatus]:
        """Flag devices as being removed; in memory only. Returns the prior statuses."""
        previous = {}
        with self._lock:
            for identity in identities:
                device = self._devices.get(identity)
                if device is not None and identity not in previous:
                    previous[identity] = device.status
                    device.status = DeviceStatus.REMOVING
            self._recompute_view()
        return previous

    def restore_statuses(self, statuses: Dict[str, DeviceStatus]):
        """Put back statuses saved by mark_removing on devices still present."""
        with self._lock:
            for identity, status in statuses.items():
                device = self._devices.get(identity)
                if device is not None and device.status == DeviceStatus.REMOVING:
                    device.status = status
            self._recompute_view()

    def remove(self, identity: str):
        with self._lock:
            if identity not in self._devices:
                raise DeviceNotFoundError(f"Device {identity} not found")
            del self._devices[identity]
            self._recompute_view()

        with self._store() as session:
            session.query(DeviceRecord).filter(DeviceRecord.id == identity).delete()
        logger.info(f"Removed device {identity}")

    def set_region(self, identity: str, region: str) -> Device:
        with self._lock:
            device = self._devices.get(identity)
            if device is None:
                raise DeviceNotFoundError(f"Device {identity} not found")
            device.region = region
            updated = device.copy()
            self._recompute_view()

        self._persist([updated])
        return updated

    def set_region_bulk(self, identities: Iterable[str], region: str) -> List[Device]:
        """
        Assign ``region`` to every listed device in one transaction.

        Entries that look like an IPv4 address update every device with that ip.
        Unknown identities are skipped.
        """
        keys = set(identities)
        updated = []
        with self._lock:
            for device in self._devices.values():
                if device.identity in keys or (device.ip in keys and IPV4_PATTERN.match(device.ip)):
                    device.region = region
                    updated.append(device.copy())
            self._recompute_view()

        self._persist(updated)
        logger.info(f"Assigned region '{region}' to {len(updated)} devices")
        return updated

    def clear(self):
        with self._lock:
            self._devices.clear()
            self._recompute_view()

        with self._store() as session:
            session.query(DeviceRecord).delete()
        logger.info("Cleared all devices")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _recompute_view(self):
        # caller holds self._lock
        self._visible = [device for device in self._devices.values() if device.in_region(self._region)]

    @contextmanager
    def _store(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Device store operation failed: {e}")
            raise PersistenceError(f"Device store operation failed: {e}") from e
        finally:
            session.close()

    @staticmethod
    def _write(session, device: Device):
        record = session.get(DeviceRecord, device.identity)
        if record is None:
            record = DeviceRecord(id=device.identity)
            session.add(record)
        record.ip = device.ip
        record.build_time = device.build_time
        record.status = _stored_status(device)
        record.region = device.region

    def _persist(self, devices: List[Device]):
        if not devices:
            return
        with self._store() as session:
            for device in devices:
                self._write(session, device)
