"""
Camera Batch Configurator
=========================

Applies spreadsheet-derived camera rows to their devices. One orchestrator
worker per device logs in once and reuses the session token for every camera
of that device: list tasks, add or modify the task, wait for the device to
initialise it, then rewrite the camera index in the task configuration.

Features:
- Rows grouped by device ip; index assigned per device starting at 1
- Add-vs-modify decided from the device's existing task list
- Index failure reported next to a successful add instead of replacing it
- Devices that answered login are registered if missing from the registry
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import settings
from .device_probe import DeviceProbe
from .error_handling import FleetError
from .models import CameraConfigResult, CameraRow, CameraTask, Device, DeviceStatus
from .orchestrator import run_bounded

logger = logging.getLogger(__name__)

TASK_LIST_PAGE = {"pageNo": 1, "pageSize": 100}


class CameraTaskClient:
    """Camera task and configuration calls for one device session."""

    def __init__(self, probe: DeviceProbe):
        self.probe = probe

    def list_tasks(self, ip: str, token: str) -> List[CameraTask]:
        result = self.probe.call(ip, "/api/task/list", token, dict(TASK_LIST_PAGE)) or {}
        return [CameraTask.from_dict(item) for item in result.get("items") or []]

    def save_task(self, ip: str, token: str, name: str, url: str, algorithm_type: int, exists: bool) -> str:
        path = "/api/task/modify" if exists else "/api/task/add"
        payload = {"taskId": name, "deviceName": name, "url": url, "types": [int(algorithm_type)]}
        self.probe.call(ip, path, token, payload)
        return "Camera task modified" if exists else "Camera task added"

    def get_config(self, ip: str, token: str, task_id: str) -> Dict[str, Any]:
        return self.probe.call(ip, "/api/config/get", token, {"taskId": task_id}) or {}

    def set_camera_index(self, ip: str, token: str, task_id: str,
                         config: Dict[str, Any], index: int) -> Tuple[bool, str]:
        algorithms = config.get("algorithms") or []
        if not algorithms:
            return False, "Camera configuration has no algorithms"

        wanted = str(index)
        changed = False
        for algorithm in algorithms:
            extra = algorithm.setdefault("ExtraConfig", {})
            if extra.get("camera_index") != wanted:
                extra["camera_index"] = wanted
                changed = True

        if not changed:
            return True, "Camera index already correct"

        try:
            self.probe.call(ip, "/api/config/mod", token, {"TaskID": task_id, "Algorithm": algorithms[0]})
        except FleetError as e:
            return False, f"Failed to set camera index: {e}"
        return True, f"Camera index set to {index}"


def group_rows(rows: List[CameraRow]) -> "OrderedDict[str, List[Tuple[CameraRow, int]]]":
    """Group configurable rows by device ip and assign each its camera index."""
    groups: "OrderedDict[str, List[Tuple[CameraRow, int]]]" = OrderedDict()
    for row in rows:
        if not row.is_configurable():
            continue
        group = groups.setdefault(row.device_ip, [])
        index = row.device_index if row.device_index > 0 else len(group) + 1
        group.append((row, index))
    return groups


class CameraBatchConfigurator:
    """Configures camera tasks on many devices, one session per device."""

    def __init__(self, probe: DeviceProbe, registry=None, max_workers: Optional[int] = None,
                 settle_seconds: Optional[float] = None, sleep: Callable[[float], None] = time.sleep):
        self.probe = probe
        self.client = CameraTaskClient(probe)
        self.registry = registry
        self.max_workers = max_workers or settings.operation_concurrency
        self.settle_seconds = settings.camera_settle_seconds if settle_seconds is None else settle_seconds
        self.sleep = sleep

    def configure(self, rows: List[CameraRow], username: str, password: str,
                  url_template: str, algorithm_type: int, region: str = "") -> List[CameraConfigResult]:
        """One result per row; rows missing ip, name or camera info fail without any device call."""
        results = [
            CameraConfigResult(target=row.camera_name, device_ip=row.device_ip, success=False,
                               message="Camera row is missing device ip, camera name or camera info")
            for row in rows if not row.is_configurable()
        ]

        groups = group_rows(rows)
        logger.info(f"Configuring {sum(len(g) for g in groups.values())} cameras on {len(groups)} devices")

        def configure_group(item: Tuple[str, List[Tuple[CameraRow, int]]]) -> List[CameraConfigResult]:
            ip, group = item
            return self._configure_device(ip, group, username, password, url_template, algorithm_type, region)

        def failed(item: Tuple[str, List[Tuple[CameraRow, int]]], error: Exception) -> List[CameraConfigResult]:
            ip, group = item
            return _fail_group(ip, group, f"Camera configuration failed: {error}")

        for group_results in run_bounded(list(groups.items()), configure_group, failed,
                                         self.max_workers, label="camera-config"):
            results.extend(group_results)
        return results

    def _register(self, ip: str, region: str):
        if self.registry is None or self.registry.find_by_region_and_ip(region, ip) is not None:
            return
        try:
            self.registry.add(Device(ip=ip, status=DeviceStatus.ONLINE, region=region))
            logger.info(f"Registered device {ip} found during camera configuration")
        except FleetError as e:
            logger.warning(f"Could not register device {ip}: {e}")

    def _configure_device(self, ip: str, group: List[Tuple[CameraRow, int]], username: str,
                          password: str, url_template: str, algorithm_type: int,
                          region: str) -> List[CameraConfigResult]:
        try:
            token = self.probe.login(ip, username, password)
        except FleetError as e:
            return _fail_group(ip, group, f"login failed: {e}")

        self._register(ip, region)

        try:
            existing = {task.task_id for task in self.client.list_tasks(ip, token)}
        except FleetError as e:
            return _fail_group(ip, group, f"Failed to list camera tasks: {e}")

        results = []
        for row, index in group:
            url = url_template.replace("<ip>", row.camera_ip)
            results.append(self._configure_camera(ip, token, row, index, url, algorithm_type,
                                                  row.camera_name in existing))
        return results

    def _configure_camera(self, ip: str, token: str, row: CameraRow, index: int, url: str,
                          algorithm_type: int, exists: bool) -> CameraConfigResult:
        try:
            message = self.client.save_task(ip, token, row.camera_name, url, algorithm_type, exists)
        except FleetError as e:
            return CameraConfigResult(target=row.camera_name, device_ip=ip, device_index=index,
                                      success=False, message=f"Failed to configure camera: {e}")

        # the device initialises new tasks asynchronously
        self.sleep(self.settle_seconds)

        try:
            config = self.client.get_config(ip, token, row.camera_name)
            index_set, index_message = self.client.set_camera_index(ip, token, row.camera_name, config, index)
        except FleetError as e:
            index_set, index_message = False, f"Failed to get camera configuration: {e}"

        return CameraConfigResult(target=row.camera_name, device_ip=ip, device_index=index,
                                  success=True, index_set=index_set, message=f"{message}. {index_message}")


def _fail_group(ip: str, group: List[Tuple[CameraRow, int]], message: str) -> List[CameraConfigResult]:
    logger.warning(f"{ip}: {message}")
    return [
        CameraConfigResult(target=row.camera_name, device_ip=ip, device_index=index,
                           success=False, message=message)
        for row, index in group
    ]
