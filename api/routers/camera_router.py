"""
Camera Configuration Router
==========================

Applies camera rows (already parsed from the spreadsheet by the front end)
to their devices.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends

from api.dependencies import get_fleet
from api.schemas import CameraConfigureRequest, CameraConfigResultResponse
from fleetadmin.fleet import FleetManager
from fleetadmin.models import CameraRow

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/configure", response_model=List[CameraConfigResultResponse])
def configure_cameras(request: CameraConfigureRequest, fleet: FleetManager = Depends(get_fleet)):
    rows = [
        CameraRow(
            device_ip=row.device_ip.strip(),
            camera_name=row.camera_name.strip(),
            camera_info=row.camera_info.strip(),
            device_index=row.device_index,
        )
        for row in request.rows
    ]
    results = fleet.configure_cameras(rows, request.username, request.password,
                                      request.url_template, request.algorithm_type, request.region)
    return [result.to_dict() for result in results]
