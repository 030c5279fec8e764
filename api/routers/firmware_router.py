"""
Firmware Update Router
=====================

Pushes one firmware image to the selected devices.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends

from api.dependencies import get_fleet
from api.schemas import FirmwareUpdateRequest, UpdateResultResponse
from fleetadmin.fleet import FleetManager

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/update", response_model=List[UpdateResultResponse])
def update_firmware(request: FirmwareUpdateRequest, fleet: FleetManager = Depends(get_fleet)):
    results = fleet.update_firmware(
        request.identities,
        request.username,
        request.password,
        request.file_path,
        md5_path=request.md5_path,
        build_time_filter=request.build_time_filter,
    )
    failed = sum(1 for result in results if not result.success)
    logger.info(f"Firmware update finished: {len(results) - failed} succeeded, {failed} failed")
    return [result.to_dict() for result in results]
