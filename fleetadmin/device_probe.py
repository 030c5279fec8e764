"""
Device HTTP Probe
=================

HTTP client operations against a single device's control API: health/version
check, session-token login and token-authorized calls. One ``requests.Session``
with a pooled adapter is shared by every worker of every batch.

Features:
- Health check via GET /api/buildTime (non-zero application code means unreachable)
- Session-token login via POST /api/login
- Token-authorized JSON calls and multipart uploads
- ``DeviceProbe`` base class so callers can inject a fake prober in tests
"""

import logging
import os
from contextlib import ExitStack
from typing import Dict, Optional, Any

import requests
from requests.adapters import HTTPAdapter

from .config import settings
from .error_handling import DeviceUnreachableError, DeviceLoginError, DeviceApiError, TransferIntegrityError
from .models import Device, DeviceStatus

logger = logging.getLogger(__name__)

TOKEN_HEADER = "Token"


class DeviceProbe:
    """Base class for device probing; subclasses talk to real or fake devices."""

    def test_device(self, ip: str) -> Device:
        """Return an online Device for ``ip`` or raise DeviceUnreachableError."""
        raise NotImplementedError

    def login(self, ip: str, username: str, password: str) -> str:
        """Return a session token or raise DeviceLoginError / DeviceUnreachableError."""
        raise NotImplementedError

    def call(self, ip: str, path: str, token: str, payload: Dict[str, Any],
             timeout: Optional[float] = None) -> Any:
        """POST a JSON body with the session token and return the envelope's result."""
        raise NotImplementedError

    def upload(self, ip: str, path: str, token: str, files: Dict[str, str],
               timeout: float) -> Dict[str, Any]:
        """POST local files as multipart form fields and return the decoded envelope."""
        raise NotImplementedError


def _unwrap(response: requests.Response, ip: str) -> Dict[str, Any]:
    """Decode the {code, msg, result} envelope and reject non-zero codes."""
    try:
        body = response.json()
    except ValueError as e:
        raise DeviceUnreachableError(f"{ip}: invalid JSON response: {e}")

    if not isinstance(body, dict):
        raise DeviceUnreachableError(f"{ip}: unexpected response shape")
    return body


class HttpDeviceProbe(DeviceProbe):
    """Device probe over the device's HTTP control API."""

    def __init__(self, session: Optional[requests.Session] = None, port: Optional[int] = None,
                 probe_timeout: Optional[float] = None, login_timeout: Optional[float] = None,
                 request_timeout: Optional[float] = None, pool_size: Optional[int] = None):
        self.port = port or settings.device_http_port
        self.probe_timeout = probe_timeout or settings.probe_timeout
        self.login_timeout = login_timeout or settings.login_timeout
        self.request_timeout = request_timeout or settings.request_timeout
        self.session = session or self._build_session(pool_size or settings.scan_concurrency * 4)

    @staticmethod
    def _build_session(pool_size: int) -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def url(self, ip: str, path: str) -> str:
        return f"http://{ip}:{self.port}{path}"

    def test_device(self, ip: str) -> Device:
        try:
            response = self.session.get(self.url(ip, "/api/buildTime"), timeout=self.probe_timeout)
        except requests.RequestException as e:
            raise DeviceUnreachableError(f"{ip}: {e}")

        if response.status_code != 200:
            raise DeviceUnreachableError(f"{ip}: HTTP {response.status_code}")

        body = _unwrap(response, ip)
        if body.get("code") != 0:
            raise DeviceUnreachableError(f"{ip}: error response from device: {body.get('msg', '')}")

        result = body.get("result") or {}
        logger.debug(f"Device {ip} answered with build time {result.get('buildTime', '')}")
        return Device(ip=ip, build_time=result.get("buildTime", "") or "", status=DeviceStatus.ONLINE)

    def login(self, ip: str, username: str, password: str) -> str:
        try:
            response = self.session.post(
                self.url(ip, "/api/login"),
                json={"username": username, "password": password},
                timeout=self.login_timeout,
            )
        except requests.RequestException as e:
            raise DeviceUnreachableError(f"{ip}: {e}")

        if response.status_code != 200:
            raise DeviceLoginError(f"{ip}: HTTP {response.status_code}")

        body = _unwrap(response, ip)
        if body.get("code") != 0:
            raise DeviceLoginError(f"{ip}: {body.get('msg', 'rejected')}")

        token = (body.get("result") or {}).get("token", "")
        if not token:
            raise DeviceLoginError(f"{ip}: device returned an empty token")
        return token

    def call(self, ip: str, path: str, token: str, payload: Dict[str, Any],
             timeout: Optional[float] = None) -> Any:
        try:
            response = self.session.post(
                self.url(ip, path),
                json=payload,
                headers={TOKEN_HEADER: token},
                timeout=timeout or self.request_timeout,
            )
        except requests.RequestException as e:
            raise DeviceUnreachableError(f"{ip}{path}: {e}")

        if not response.ok:
            raise DeviceApiError(f"{ip}{path}: HTTP {response.status_code}")

        body = _unwrap(response, ip)
        if body.get("code") != 0:
            raise DeviceApiError(f"{ip}{path}: {body.get('msg', 'request failed')}")
        return body.get("result")

    def upload(self, ip: str, path: str, token: str, files: Dict[str, str],
               timeout: float) -> Dict[str, Any]:
        with ExitStack() as stack:
            multipart = {
                field_name: (os.path.basename(file_path), stack.enter_context(open(file_path, "rb")),
                             "application/octet-stream")
                for field_name, file_path in files.items()
            }
            try:
                response = self.session.post(
                    self.url(ip, path),
                    files=multipart,
                    headers={TOKEN_HEADER: token},
                    timeout=timeout,
                )
            except requests.RequestException as e:
                raise DeviceUnreachableError(f"{ip}{path}: {e}")

        if not response.ok:
            details = response.content[:settings.response_body_cap].decode("utf-8", errors="replace")
            raise TransferIntegrityError(f"Upload failed with status: {response.status_code}, details: {details}")

        return _unwrap(response, ip)

    def close(self):
        self.session.close()
