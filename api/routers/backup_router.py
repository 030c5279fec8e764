"""
Backup/Restore Router
====================

Runs database backups and restores, lists and deletes backup points, and
reads/writes the backup settings record.
"""

import logging
from typing import Dict, List

from fastapi import APIRouter, Depends

from api.dependencies import get_fleet
from api.schemas import (
    BackupRequest, RestoreRequest, BackupResultResponse, RestoreResultResponse,
    BackupPointResponse, BackupSettingsSchema, BackupSettingsResponse, MessageResponse
)
from fleetadmin.file_storage import BackupSettingsStore
from fleetadmin.fleet import FleetManager
from fleetadmin.models import BackupSettings

router = APIRouter()
logger = logging.getLogger(__name__)


def _to_settings(schema: BackupSettingsSchema) -> BackupSettings:
    return BackupSettings(
        storage_folder=schema.storage_folder,
        region_name=schema.region_name,
        username=schema.username,
        password=schema.password,
    )


@router.post("/run", response_model=List[BackupResultResponse])
def run_backup(request: BackupRequest, fleet: FleetManager = Depends(get_fleet)):
    results = fleet.backup(request.identities, _to_settings(request.settings))
    return [result.to_dict() for result in results]


@router.post("/restore", response_model=List[RestoreResultResponse])
def run_restore(request: RestoreRequest, fleet: FleetManager = Depends(get_fleet)):
    results = fleet.restore(request.identities, _to_settings(request.settings), request.backup_points)
    return [result.to_dict() for result in results]


@router.get("/points", response_model=Dict[str, List[BackupPointResponse]])
def list_backup_points(fleet: FleetManager = Depends(get_fleet)):
    """Backup points of the configured region, newest first per device."""
    backup_settings = fleet.backup_settings.load()
    listing = fleet.backup_storage(backup_settings).list_backup_points(backup_settings.region_name)
    return {device: [point.to_dict() for point in points] for device, points in listing.items()}


@router.delete("/points/{device}/{timestamp}", response_model=MessageResponse)
def delete_backup_point(device: str, timestamp: str, fleet: FleetManager = Depends(get_fleet)):
    backup_settings = fleet.backup_settings.load()
    fleet.backup_storage(backup_settings).delete_backup_point(backup_settings.region_name, device, timestamp)
    return {"message": f"Backup point {device}/{timestamp} deleted"}


@router.get("/settings", response_model=BackupSettingsResponse)
def get_backup_settings(fleet: FleetManager = Depends(get_fleet)):
    return BackupSettingsStore.to_public_dict(fleet.backup_settings.load())


@router.put("/settings", response_model=MessageResponse)
def save_backup_settings(request: BackupSettingsSchema, fleet: FleetManager = Depends(get_fleet)):
    fleet.backup_settings.save(_to_settings(request))
    return {"message": "Backup settings saved"}
