"""
Pytest configuration and fixtures for device-fleet-admin tests.
"""

import shlex
import socket
import threading
from contextlib import contextmanager

import pytest

from fleetadmin.database import create_session_factory
from fleetadmin.device_probe import DeviceProbe
from fleetadmin.error_handling import DeviceLoginError, DeviceUnreachableError, RemoteCommandError
from fleetadmin.models import Device, DeviceStatus
from fleetadmin.registry import DeviceRegistry


class FakeProbe(DeviceProbe):
    """In-memory device prober.

    ``devices`` maps ip to build time; any other ip is unreachable.
    """

    def __init__(self, devices=None, login_failures=(), call_handlers=None, upload_response=None):
        self.devices = dict(devices or {})
        self.login_failures = set(login_failures)
        self.call_handlers = dict(call_handlers or {})
        self.upload_response = upload_response or {"code": 0, "msg": "ok"}
        self.calls = []
        self.uploads = []
        self._lock = threading.Lock()

    def _record(self, entry, target):
        with self._lock:
            target.append(entry)

    def test_device(self, ip):
        if ip not in self.devices:
            raise DeviceUnreachableError(f"{ip}: timed out")
        return Device(ip=ip, build_time=self.devices[ip], status=DeviceStatus.ONLINE)

    def login(self, ip, username, password):
        if ip in self.login_failures:
            raise DeviceLoginError(f"{ip}: invalid credentials")
        if ip not in self.devices:
            raise DeviceUnreachableError(f"{ip}: timed out")
        return f"token-{ip}"

    def call(self, ip, path, token, payload, timeout=None):
        self._record((ip, path, token, payload), self.calls)
        handler = self.call_handlers.get(path)
        if handler is None:
            return {}
        return handler(ip, payload)

    def upload(self, ip, path, token, files, timeout):
        self._record((ip, path, token, dict(files), timeout), self.uploads)
        return self.upload_response


class FakeShell:
    """Remote shell over a simulated device filesystem and service."""

    def __init__(self, ip_address, files=None, fail_commands=(), truncate_writes=False):
        self.ip_address = ip_address
        self.files = dict(files or {})
        self.modes = {}
        self.service_running = True
        self.fail_commands = tuple(fail_commands)
        self.truncate_writes = truncate_writes
        self.commands = []

    def _fails(self, command):
        return any(command.startswith(prefix) for prefix in self.fail_commands)

    def run(self, command, timeout=None):
        self.commands.append(command)
        if self._fails(command):
            return 1, b"", "injected failure"

        if command.startswith("date "):
            return 0, b"", ""

        args = shlex.split(command)
        name = args[0]
        if name == "systemctl":
            self.service_running = args[1] == "start"
            return 0, b"", ""
        if name == "cp":
            if args[1] not in self.files:
                return 1, b"", f"cp: cannot stat '{args[1]}'"
            self.files[args[2]] = self.files[args[1]]
            return 0, b"", ""
        if name == "mkdir":
            return 0, b"", ""
        if name == "stat":
            path = args[-1]
            if path not in self.files:
                return 1, b"", "stat: No such file"
            return 0, str(len(self.files[path])).encode(), ""
        if name == "chmod":
            self.modes[args[2]] = int(args[1], 8)
            return 0, b"", ""
        if name == "rm":
            self.files.pop(args[-1], None)
            return 0, b"", ""
        return 127, b"", f"{name}: not found"

    def execute(self, command, timeout=None):
        exit_status, output, errors = self.run(command, timeout=timeout)
        if exit_status != 0:
            raise RemoteCommandError(command, exit_status, errors)
        return output.decode()

    def stream_to(self, command, sink):
        self.commands.append(command)
        path = shlex.split(command)[1]
        if self._fails(command) or path not in self.files:
            raise RemoteCommandError(command, 1, "cat: No such file")
        sink.write(self.files[path])
        return len(self.files[path])

    def stream_from(self, command, source):
        self.commands.append(command)
        if self._fails(command):
            raise RemoteCommandError(command, 1, "dd: write error")
        path = shlex.split(command)[1][len("of="):]
        data = source.read()
        self.files[path] = data[:-1] if self.truncate_writes and data else data
        return len(data)


@pytest.fixture
def session_factory(tmp_path):
    """Session factory over a throwaway SQLite file."""
    return create_session_factory(f"sqlite:///{tmp_path / 'devices.db'}")


@pytest.fixture
def registry(session_factory, tmp_path):
    """Loaded registry with an empty store."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    registry = DeviceRegistry(session_factory, config_dir=str(config_dir))
    registry.load()
    return registry


@pytest.fixture
def fake_probe():
    """Factory for FakeProbe instances."""
    return FakeProbe


@pytest.fixture
def shells():
    """Fake shells by device ip, filled in by each test."""
    return {}


@pytest.fixture
def connector(shells):
    """SSH connector over ``shells``; unknown addresses time out."""

    @contextmanager
    def connect(ip, username, password):
        if ip not in shells:
            raise socket.timeout(f"connect to {ip} timed out")
        if password == "wrong":
            raise DeviceLoginError(f"{ip}: authentication failed")
        yield shells[ip]

    return connect


@pytest.fixture
def make_shell(shells):
    """Create and register a FakeShell for an ip."""

    def make(ip, **kwargs):
        shell = FakeShell(ip, **kwargs)
        shells[ip] = shell
        return shell

    return make
