"""
Unit tests for SSH backup and restore of the device database.

Devices are FakeShell instances; the local side uses a temporary backup root.
"""

import json
import os

import pytest

from fleetadmin.backup_executor import BackupExecutor
from fleetadmin.file_storage import BackupStorage
from fleetadmin.models import Device

REMOTE_DB = "/opt/app/data/app.db"
REGION = "north"


@pytest.fixture
def executor(connector):
    return BackupExecutor(connector, max_workers=4, service="application-web",
                          remote_db_path=REMOTE_DB, settle_seconds=0)


@pytest.fixture
def storage(tmp_path):
    return BackupStorage(tmp_path / "backups", db_file_name="app.db")


def _make_point(storage, ip, timestamp, content, mode=0o640):
    directory = storage.create_point_dir(REGION, ip, timestamp)
    db_path = directory / storage.db_file_name
    db_path.write_bytes(content)
    os.chmod(db_path, mode)
    return db_path


class TestBackup:
    """Tests for BackupExecutor.backup"""

    def test_backup_copies_database_and_metadata(self, executor, storage, make_shell):
        shell = make_shell("10.0.0.1", files={REMOTE_DB: b"SQLite format 3\x00rows"})

        results = executor.backup([Device(ip="10.0.0.1")], "root", "pw", str(storage.root), region=REGION)

        result = results[0]
        assert result.success, result.message
        assert shell.service_running
        assert shell.commands[0] == "systemctl stop application-web"
        assert shell.commands[-1] == "systemctl start application-web"

        point = storage.latest_backup_point(REGION, "10.0.0.1")
        assert point.timestamp == result.timestamp
        with open(point.path, "rb") as f:
            assert f.read() == b"SQLite format 3\x00rows"

        metadata = storage.read_metadata(point)
        assert metadata["size_bytes"] == len(b"SQLite format 3\x00rows")
        assert metadata["device_ip"] == "10.0.0.1"

    def test_failed_copy_restarts_service_and_discards_point(self, executor, storage, make_shell):
        shell = make_shell("10.0.0.1", files={REMOTE_DB: b"data"}, fail_commands=("cat",))

        result = executor.backup([Device(ip="10.0.0.1")], "root", "pw", str(storage.root), region=REGION)[0]

        assert not result.success
        assert result.message.startswith("Backup failed")
        assert shell.service_running
        assert storage.device_backup_points(REGION, "10.0.0.1") == []
        assert not any((storage.root / REGION / "10.0.0.1").iterdir())

    def test_one_bad_device_does_not_stop_the_batch(self, executor, storage, make_shell):
        make_shell("10.0.0.1", files={REMOTE_DB: b"one"})
        devices = [Device(ip="10.0.0.1"), Device(ip="10.0.0.2")]

        results = executor.backup(devices, "root", "pw", str(storage.root), region=REGION)

        assert {r.target: r.success for r in results} == {"10.0.0.1": True, "10.0.0.2": False}

    def test_restart_failure_is_reported(self, executor, storage, make_shell):
        make_shell("10.0.0.1", files={REMOTE_DB: b"data"}, fail_commands=("systemctl start",))

        result = executor.backup([Device(ip="10.0.0.1")], "root", "pw", str(storage.root), region=REGION)[0]

        assert not result.success
        assert "service restart failed" in result.message
        assert storage.latest_backup_point(REGION, "10.0.0.1") is not None

    def test_nothing_selected(self, executor, storage):
        results = executor.backup([], "root", "pw", str(storage.root))

        assert len(results) == 1 and not results[0].success

    def test_region_outside_the_root_touches_no_device(self, executor, storage, make_shell):
        shell = make_shell("10.0.0.1", files={REMOTE_DB: b"live"})

        result = executor.backup([Device(ip="10.0.0.1")], "root", "pw", str(storage.root), region="..")[0]

        assert not result.success
        assert "Invalid region name" in result.message
        assert shell.commands == []


class TestRestore:
    """Tests for BackupExecutor.restore"""

    def test_restore_replaces_database(self, executor, storage, make_shell):
        _make_point(storage, "10.0.0.1", "20250101120000", b"restored-content", mode=0o640)
        shell = make_shell("10.0.0.1", files={REMOTE_DB: b"live-content"})

        result = executor.restore([Device(ip="10.0.0.1")], "root", "pw",
                                  {"10.0.0.1": "20250101120000"}, str(storage.root), region=REGION)[0]

        assert result.success, result.message
        assert result.backup_point == "20250101120000"
        assert shell.files[REMOTE_DB] == b"restored-content"
        assert shell.modes[REMOTE_DB] == 0o640
        assert shell.service_running
        aside = [path for path in shell.files if path.startswith(REMOTE_DB + ".bak.")]
        assert len(aside) == 1
        assert shell.files[aside[0]] == b"live-content"

    def test_failed_transfer_rolls_back(self, executor, storage, make_shell):
        """A short transfer puts the previous database back and restarts the service"""
        _make_point(storage, "10.0.0.1", "20250101120000", b"restored-content")
        shell = make_shell("10.0.0.1", files={REMOTE_DB: b"live-content"}, truncate_writes=True)

        result = executor.restore([Device(ip="10.0.0.1")], "root", "pw",
                                  {"10.0.0.1": "20250101120000"}, str(storage.root), region=REGION)[0]

        assert not result.success
        assert "previous database put back" in result.message
        assert shell.files[REMOTE_DB] == b"live-content"
        assert shell.service_running

    def test_missing_point_touches_no_device(self, executor, storage, make_shell):
        shell = make_shell("10.0.0.1", files={REMOTE_DB: b"live-content"})

        result = executor.restore([Device(ip="10.0.0.1")], "root", "pw",
                                  {"10.0.0.1": "20250101120000"}, str(storage.root), region=REGION)[0]

        assert not result.success
        assert shell.commands == []

    def test_latest_point_by_default(self, executor, storage, make_shell):
        _make_point(storage, "10.0.0.1", "20240101120000", b"older")
        _make_point(storage, "10.0.0.1", "20250101120000", b"newer")
        shell = make_shell("10.0.0.1", files={REMOTE_DB: b"live"})

        result = executor.restore([Device(ip="10.0.0.1")], "root", "pw", {}, str(storage.root), region=REGION)[0]

        assert result.success
        assert result.backup_point == "20250101120000"
        assert shell.files[REMOTE_DB] == b"newer"

    def test_point_selected_by_identity(self, executor, storage, make_shell):
        _make_point(storage, "10.0.0.1", "20240101120000", b"older")
        _make_point(storage, "10.0.0.1", "20250101120000", b"newer")
        shell = make_shell("10.0.0.1", files={REMOTE_DB: b"live"})
        device = Device(ip="10.0.0.1")

        executor.restore([device], "root", "pw", {device.identity: "20240101120000"},
                         str(storage.root), region=REGION)

        assert shell.files[REMOTE_DB] == b"older"

    def test_explicit_point_outside_the_tree_is_rejected(self, executor, storage, make_shell):
        shell = make_shell("10.0.0.1", files={REMOTE_DB: b"live"})

        result = executor.restore([Device(ip="10.0.0.1")], "root", "pw", {"10.0.0.1": "../../etc"},
                                  str(storage.root), region=REGION)[0]

        assert not result.success
        assert shell.commands == []


class TestBackupStorageListing:
    """Tests for listing, deleting and pruning backup points"""

    def test_listing_ignores_incomplete_points(self, storage):
        _make_point(storage, "10.0.0.1", "20250101120000", b"a")
        storage.create_point_dir(REGION, "10.0.0.1", "20250102120000")
        (storage.root / REGION / "10.0.0.1" / "not-a-timestamp").mkdir()

        listing = storage.list_backup_points(REGION)

        assert [p.timestamp for p in listing["10.0.0.1"]] == ["20250101120000"]

    def test_prune_keeps_newest(self, storage):
        for timestamp in ("20250101120000", "20250102120000", "20250103120000"):
            _make_point(storage, "10.0.0.1", timestamp, b"x")

        assert storage.prune(REGION, "10.0.0.1", keep=1) == 2
        assert [p.timestamp for p in storage.device_backup_points(REGION, "10.0.0.1")] == ["20250103120000"]

    def test_metadata_is_json(self, storage):
        _make_point(storage, "10.0.0.1", "20250101120000", b"abc")
        storage.write_metadata(REGION, "10.0.0.1", "20250101120000")

        raw = (storage.root / REGION / "10.0.0.1" / "20250101120000" / "metadata.json").read_text()
        assert json.loads(raw)["sha256"] == \
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
