from pydantic import BaseModel, Field
from typing import Optional, List, Dict

from fleetadmin.models import DeviceStatus

# Device Schemas
class DeviceResponse(BaseModel):
	identity: str
	ip: str
	build_time: str = ""
	status: DeviceStatus
	region: str = ""
	
	class Config:
		from_attributes = True

class DeviceAdd(BaseModel):
	ip: str
	region: str = ""

class RegionAssign(BaseModel):
	region: str = ""

class BulkRegionAssign(BaseModel):
	identities: List[str]
	region: str = ""

class RegionFilter(BaseModel):
	region: str = ""

class ScanRequest(BaseModel):
	start_ip: str
	end_ip: str
	region: str = ""

class DeviceSelection(BaseModel):
	identities: Optional[List[str]] = None

# Operation Result Schemas
class OperationResultResponse(BaseModel):
	target: str
	success: bool
	message: str = ""

class UpdateResultResponse(OperationResultResponse):
	identity: str = ""

class BackupResultResponse(OperationResultResponse):
	timestamp: str = ""
	backup_path: Optional[str] = None

class RestoreResultResponse(OperationResultResponse):
	backup_point: Optional[str] = None

class TimeSyncResultResponse(OperationResultResponse):
	timestamp: str = ""

class CameraConfigResultResponse(OperationResultResponse):
	device_ip: str = ""
	device_index: int = 0
	index_set: bool = False

# Firmware Schemas
class FirmwareUpdateRequest(DeviceSelection):
	username: str
	password: str
	file_path: Optional[str] = None
	md5_path: Optional[str] = None
	build_time_filter: Optional[str] = None

# Backup Schemas
class BackupSettingsSchema(BaseModel):
	storage_folder: str = ""
	region_name: str = ""
	username: str = "root"
	password: str = ""

class BackupSettingsResponse(BaseModel):
	storage_folder: str
	region_name: str
	username: str
	password: str

class BackupRequest(DeviceSelection):
	settings: BackupSettingsSchema

class RestoreRequest(DeviceSelection):
	settings: BackupSettingsSchema
	backup_points: Dict[str, str] = Field(default_factory=dict)

class BackupPointResponse(BaseModel):
	device: str
	timestamp: str
	path: str

class TimeSyncRequest(DeviceSelection):
	username: str
	password: str

# Camera Schemas
class CameraRowSchema(BaseModel):
	device_ip: str = Field("", alias="deviceIp")
	camera_name: str = Field("", alias="cameraName")
	camera_info: str = Field("", alias="cameraInfo")
	device_index: int = Field(0, alias="deviceIndex")
	
	class Config:
		populate_by_name = True

class CameraConfigureRequest(BaseModel):
	rows: List[CameraRowSchema]
	username: str
	password: str
	url_template: str
	algorithm_type: int
	region: str = ""

# Common Response Schemas
class MessageResponse(BaseModel):
	message: str
	success: bool = True
