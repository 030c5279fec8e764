"""
Fleet Data Model
================

Value types shared by the registry, the orchestrated operations and the API layer.

Features:
- Device records with stable identity and wildcard region membership
- Backup points keyed by a fixed-width sortable timestamp
- Uniform operation results (target, success, message, extras)
- Camera configuration rows and device task records
- Firmware update requests carrying the upload path explicitly
"""

import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Any

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class DeviceStatus(str, Enum):
    """Device reachability status."""
    ONLINE = "online"
    OFFLINE = "offline"
    REMOVING = "removing"


def new_identity() -> str:
    """Mint an opaque device identity."""
    return str(uuid.uuid4())


@dataclass
class Device:
    """A managed network endpoint."""
    ip: str
    build_time: str = ""
    status: DeviceStatus = DeviceStatus.ONLINE
    region: str = ""
    identity: str = field(default_factory=new_identity)

    def in_region(self, region: str) -> bool:
        """Empty filter shows everything; empty region matches every filter."""
        return not region or not self.region or self.region == region

    def copy(self, **changes) -> "Device":
        data = asdict(self)
        data.update(changes)
        return Device(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.identity,
            "ip": self.ip,
            "buildTime": self.build_time,
            "status": self.status.value,
            "region": self.region,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Device":
        """Build a device from the flat JSON record format."""
        try:
            status = DeviceStatus(data.get("status") or DeviceStatus.OFFLINE.value)
        except ValueError:
            status = DeviceStatus.OFFLINE
        return cls(
            ip=data["ip"],
            build_time=data.get("buildTime", "") or "",
            status=status,
            region=data.get("region", "") or "",
            identity=data.get("id") or new_identity(),
        )


@dataclass
class BackupPoint:
    """One timestamped snapshot of a device database stored locally."""
    device: str
    timestamp: str
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OperationResult:
    """Outcome of one orchestrated per-item operation."""
    target: str
    success: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScanResult(OperationResult):
    device: Optional[Device] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"target": self.target, "success": self.success, "message": self.message}
        data["device"] = self.device.to_dict() if self.device else None
        return data


@dataclass
class UpdateResult(OperationResult):
    identity: str = ""


@dataclass
class BackupResult(OperationResult):
    timestamp: str = ""
    backup_path: Optional[str] = None


@dataclass
class RestoreResult(OperationResult):
    backup_point: Optional[str] = None


@dataclass
class TimeSyncResult(OperationResult):
    timestamp: str = ""


@dataclass
class CameraConfigResult(OperationResult):
    device_ip: str = ""
    device_index: int = 0
    index_set: bool = False


@dataclass
class CameraRow:
    """One camera configuration row as parsed by the front end."""
    device_ip: str
    camera_name: str
    camera_info: str
    device_index: int = 0

    @property
    def camera_ip(self) -> str:
        return self.camera_info.split("/", 1)[0]

    def is_configurable(self) -> bool:
        return bool(self.device_ip and self.camera_name and self.camera_info and self.camera_info != "/")


@dataclass
class CameraTask:
    """A camera task as listed by the device."""
    task_id: str
    device_name: str = ""
    url: str = ""
    types: List[int] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraTask":
        return cls(
            task_id=data.get("taskId", ""),
            device_name=data.get("deviceName", ""),
            url=data.get("url", ""),
            types=[int(value) for value in data.get("types") or []],
        )


@dataclass
class BackupSettings:
    """Backup settings record: storage root, region sub-path and SSH credentials."""
    storage_folder: str = ""
    region_name: str = ""
    username: str = "root"
    password: str = ""


@dataclass
class UpdateRequest:
    """Everything one firmware update batch needs."""
    devices: List[Device]
    username: str
    password: str
    file_path: Optional[str]
    md5_path: Optional[str] = None
    build_time_filter: Optional[str] = None
