"""
Device Management Router
=======================

Handles the device registry: listing, probe-then-add, removal, region
assignment and filtering, range scans, status refresh and clock sync.
"""

import logging
from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_fleet
from api.schemas import (
    DeviceResponse, DeviceAdd, RegionAssign, BulkRegionAssign, RegionFilter,
    ScanRequest, TimeSyncRequest, TimeSyncResultResponse, MessageResponse
)
from fleetadmin.fleet import FleetManager

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/", response_model=List[DeviceResponse])
def get_devices(include_all: bool = Query(False, alias="all"), fleet: FleetManager = Depends(get_fleet)):
    """Devices under the current region filter, or every device with ``all=true``."""
    devices = fleet.registry.get_all() if include_all else fleet.registry.get()
    return [asdict(device) for device in devices]


@router.get("/regions", response_model=List[str])
def get_regions(fleet: FleetManager = Depends(get_fleet)):
    return fleet.registry.get_regions()


@router.get("/filter", response_model=RegionFilter)
def get_region_filter(fleet: FleetManager = Depends(get_fleet)):
    return {"region": fleet.registry.current_region}


@router.put("/filter", response_model=MessageResponse)
def set_region_filter(request: RegionFilter, fleet: FleetManager = Depends(get_fleet)):
    fleet.registry.set_region_filter(request.region)
    return {"message": f"Region filter set to '{request.region}'"}


@router.post("/", response_model=DeviceResponse, status_code=status.HTTP_201_CREATED)
def add_device(request: DeviceAdd, fleet: FleetManager = Depends(get_fleet)):
    """Probe the address and add the device if it answers."""
    device = fleet.scanner.test_and_add(request.ip, request.region)
    logger.info(f"Device {device.ip} added with identity {device.identity}")
    return asdict(device)


@router.post("/scan", response_model=List[DeviceResponse])
def scan_range(request: ScanRequest, fleet: FleetManager = Depends(get_fleet)):
    devices = fleet.scanner.scan_range(request.start_ip, request.end_ip, request.region)
    return [asdict(device) for device in devices]


@router.post("/refresh", response_model=List[DeviceResponse])
def refresh_devices(fleet: FleetManager = Depends(get_fleet)):
    return [asdict(device) for device in fleet.scanner.refresh()]


@router.post("/time-sync", response_model=List[TimeSyncResultResponse])
def sync_time(request: TimeSyncRequest, fleet: FleetManager = Depends(get_fleet)):
    results = fleet.sync_time(request.identities, request.username, request.password)
    return [result.to_dict() for result in results]


@router.put("/region", response_model=List[DeviceResponse])
def set_region_bulk(request: BulkRegionAssign, fleet: FleetManager = Depends(get_fleet)):
    devices = fleet.registry.set_region_bulk(request.identities, request.region)
    return [asdict(device) for device in devices]


@router.delete("/", response_model=MessageResponse)
def clear_devices(fleet: FleetManager = Depends(get_fleet)):
    fleet.registry.clear()
    return {"message": "All devices removed"}


@router.get("/{identity}", response_model=DeviceResponse)
def get_device(identity: str, fleet: FleetManager = Depends(get_fleet)):
    device = fleet.registry.get_device(identity)
    if device is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {identity} not found"
        )
    return asdict(device)


@router.put("/{identity}/region", response_model=DeviceResponse)
def set_region(identity: str, request: RegionAssign, fleet: FleetManager = Depends(get_fleet)):
    return asdict(fleet.registry.set_region(identity, request.region))


@router.delete("/{identity}", response_model=MessageResponse)
def remove_device(identity: str, fleet: FleetManager = Depends(get_fleet)):
    fleet.remove_devices([identity])
    return {"message": f"Device {identity} removed"}
