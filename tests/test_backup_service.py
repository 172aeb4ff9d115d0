import json
import os
import struct
import time
import zipfile

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backup.api import BackupService, config_from_settings
from backup.types import BackupConfig, BackupKind, ErrorKind
from core.settings import merge_defaults


@pytest.fixture()
def service(tmp_path):
    data_dir = tmp_path / "data"
    (data_dir / "b").mkdir(parents=True)
    (data_dir / "a.txt").write_bytes(b"0123456789")
    config = BackupConfig(
        data_dir=data_dir,
        backups_dir=tmp_path / "backups",
        max_backups=1,
        days_to_keep=1,
        logs_dir=tmp_path / "logs",
    )
    return BackupService(config)


def test_full_backup_and_listing(service):
    result = service.create_full_backup()

    assert result.success
    assert 0 < result.compression_ratio
    records = service.list_backups()
    assert [record.file_name for record in records] == [result.archive_path.name]
    assert records[0].kind is BackupKind.FULL
    assert (service.config.logs_dir / "backup.jsonl").exists()


def test_restore_missing_archive_returns_not_found(service):
    result = service.restore_backup("full_backup_20000101_000000.zip")

    assert not result.success
    assert result.error_kind is ErrorKind.NOT_FOUND
    assert result.message == "Backup file not found: full_backup_20000101_000000.zip"


def test_restore_round_trip(service):
    backup = service.create_full_backup()
    (service.config.data_dir / "a.txt").write_bytes(b"changed")

    result = service.restore_backup(backup.archive_path.name)

    assert result.success
    assert result.files_restored == 1
    assert (service.config.data_dir / "a.txt").read_bytes() == b"0123456789"
    assert (service.config.data_dir / "b").is_dir()
    assert (result.safety_snapshot / "a.txt").read_bytes() == b"changed"


def test_internal_errors_become_failure_results(service, monkeypatch):
    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("backup.api.create_full_backup", boom)
    monkeypatch.setattr("backup.api.apply_retention", boom)

    backup = service.create_full_backup()
    cleanup = service.cleanup_old_backups()

    assert not backup.success
    assert backup.error_kind is ErrorKind.IO_FAILURE
    assert backup.message == "Backup failed: disk full"
    assert not cleanup.success
    assert cleanup.message == "Cleanup failed: disk full"


def test_operations_refuse_while_busy(service):
    assert service._busy.acquire(blocking=False)
    try:
        result = service.create_incremental_backup()
    finally:
        service._busy.release()

    assert not result.success
    assert result.error_kind is ErrorKind.BUSY
    assert service.create_incremental_backup().success


def test_cleanup_uses_configured_policy(service):
    old = time.time() - 5 * 86400
    for name in ("full_backup_1.zip", "full_backup_2.zip"):
        path = service.config.backups_dir / name
        path.write_bytes(b"zip")
        os.utime(path, (old, old))
    os.utime(service.config.backups_dir / "full_backup_2.zip", (old + 60, old + 60))

    result = service.cleanup_old_backups()

    assert result.deleted == ["full_backup_1.zip"]
    assert result.bytes_freed == 3


def test_tree_report(service):
    report = service.tree_report(extension="txt")

    assert report.exists
    assert report.size_bytes == 10
    assert report.file_count == 1
    assert report.max_depth == 2
    assert report.matches == [service.config.data_dir / "a.txt"]
    assert "a.txt" in report.tree


def test_config_from_settings(tmp_path, monkeypatch):
    monkeypatch.delenv("DATAVAULT_DEBUG", raising=False)
    settings = merge_defaults({"backup": {"retention": {"max_backups": 3}}})

    config = config_from_settings(tmp_path, settings)

    assert config.data_dir == tmp_path / "data"
    assert config.backups_dir == tmp_path / "backups"
    assert config.max_backups == 3
    assert config.days_to_keep == 30
    assert config.debug is False

    monkeypatch.setenv("DATAVAULT_DEBUG", "1")
    custom = config_from_settings(tmp_path, {"backup": {"data_dir": str(tmp_path / "managed")}})
    assert custom.data_dir == tmp_path / "managed"
    assert custom.debug is True


def test_http_router(service):
    app = FastAPI()
    app.include_router(service.router())
    client = TestClient(app)

    created = client.post("/v1/backup/full")
    assert created.status_code == 200
    body = created.json()
    assert body["success"] is True
    archive_name = body["details"]["archive"]
    assert archive_name.startswith("full_backup_")

    listing = client.get("/v1/backup/list").json()
    assert [entry["file_name"] for entry in listing["backups"]] == [archive_name]
    assert listing["backups"][0]["kind"] == "FULL"

    skipped = client.post("/v1/backup/incremental")
    assert skipped.status_code == 200
    assert skipped.json()["error_kind"] == "no_changes"

    missing = client.post("/v1/backup/restore", json={"file_name": "nope.zip"})
    assert missing.status_code == 404

    restored = client.post("/v1/backup/restore", json={"file_name": archive_name})
    assert restored.status_code == 200
    assert restored.json()["details"]["files_restored"] == 1

    cleanup = client.post("/v1/backup/cleanup", json={"max_backups": 5})
    assert cleanup.status_code == 200
    assert cleanup.json()["details"]["backups_deleted"] == 0

    stats = client.get("/v1/backup/stats").json()
    assert stats["size_bytes"] == 10
    assert stats["file_count"] == 1
    rejected = client.post("/v1/backup/cleanup", json={"days_to_keep": 0})
    assert rejected.status_code == 422


def _logged_events(service):
    path = service.config.logs_dir / "backup.jsonl"
    return [json.loads(line)["event"] for line in path.read_text(encoding="utf-8").splitlines()]


def _write_corrupt_archive(path, *, age_days: int):
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("backup_metadata.txt", "Backup Type: INCREMENTAL\n" * 4)
        archive.writestr("data/a.txt", b"a")
    with zipfile.ZipFile(path) as archive:
        info = archive.getinfo("backup_metadata.txt")
    raw = bytearray(path.read_bytes())
    name_len, extra_len = struct.unpack("<HH", raw[info.header_offset + 26 : info.header_offset + 30])
    start = info.header_offset + 30 + name_len + extra_len
    raw[start : start + info.compress_size] = b"\xff" * info.compress_size
    path.write_bytes(bytes(raw))
    stamp = time.time() - age_days * 86400
    os.utime(path, (stamp, stamp))


def test_restore_without_data_directory_is_invalid_structure(service):
    archive = service.config.backups_dir / "full_backup_19990101_000000.zip"
    with zipfile.ZipFile(archive, "w") as handle:
        handle.writestr("notes.txt", "no data here")

    result = service.restore_backup(archive.name)

    assert not result.success
    assert result.error_kind is ErrorKind.INVALID_STRUCTURE
    assert result.message.startswith("Invalid backup structure")
    assert (service.config.data_dir / "a.txt").read_bytes() == b"0123456789"


def test_incremental_failure_becomes_result(service, monkeypatch):
    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("backup.api.create_incremental_backup", boom)

    result = service.create_incremental_backup()

    assert not result.success
    assert result.error_kind is ErrorKind.IO_FAILURE
    assert result.message == "Incremental backup failed: disk full"


def test_corrupt_archive_is_listed_and_pruned(service):
    healthy = service.create_full_backup()
    _write_corrupt_archive(service.config.backups_dir / "incremental_backup_broken.zip", age_days=90)

    records = service.list_backups()

    assert [record.file_name for record in records] == [
        healthy.archive_path.name,
        "incremental_backup_broken.zip",
    ]
    assert records[1].kind is BackupKind.INCREMENTAL
    assert "backup_unreadable" in _logged_events(service)

    cleanup = service.cleanup_old_backups()

    assert cleanup.success
    assert cleanup.deleted == ["incremental_backup_broken.zip"]
    assert healthy.archive_path.exists()


def test_cleanup_rejects_invalid_bounds_without_raising(service):
    non_numeric = service.cleanup_old_backups(max_backups="many")
    zero_days = service.cleanup_old_backups(days_to_keep=0)

    assert not non_numeric.success
    assert non_numeric.message.startswith("Cleanup failed: ")
    assert not zero_days.success
    assert zero_days.message == "Cleanup failed: days_to_keep must be at least 1"


def test_debug_events_only_in_debug_mode(service, tmp_path):
    service.create_full_backup()
    assert "data_staged" not in _logged_events(service)

    verbose = BackupService(
        BackupConfig(
            data_dir=service.config.data_dir,
            backups_dir=tmp_path / "verbose_backups",
            debug=True,
            logs_dir=tmp_path / "verbose_logs",
        )
    )
    verbose.create_full_backup()

    assert "data_staged" in _logged_events(verbose)
