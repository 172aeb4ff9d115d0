import os
import time
import zipfile

from backup.codec import extract_archive
from backup.create import create_full_backup, create_incremental_backup, last_backup_time
from backup.logs import BackupLogger
from backup.metadata import read_metadata
from backup.tree import file_count, tree_size
from backup.types import BackupKind, ErrorKind


def _set_mtime(path, value):
    os.utime(path, (value, value))


def _archives(backups_dir):
    return sorted(path.name for path in backups_dir.glob("*.zip"))


def _setup(tmp_path):
    data_dir = tmp_path / "data"
    (data_dir / "b").mkdir(parents=True)
    (data_dir / "a.txt").write_bytes(b"0123456789")
    backups_dir = tmp_path / "backups"
    logger = BackupLogger(tmp_path / "logs")
    return data_dir, backups_dir, logger


def test_full_backup_captures_tree(tmp_path):
    data_dir, backups_dir, logger = _setup(tmp_path)

    result = create_full_backup(data_dir, backups_dir, logger=logger)

    assert result.success
    assert result.kind is BackupKind.FULL
    assert result.files_copied == 1
    assert _archives(backups_dir) == [result.archive_path.name]
    assert result.archive_path.name.startswith("full_backup_")
    assert result.compressed_size == result.archive_path.stat().st_size
    assert result.original_size > 10
    assert result.message.startswith(f"Full backup created: {result.archive_path.name}")

    extracted = tmp_path / "extracted"
    extract_archive(result.archive_path, extracted)
    assert (extracted / "data" / "a.txt").read_bytes() == b"0123456789"
    assert (extracted / "data" / "b").is_dir()
    assert (extracted / "backup_metadata.txt").exists()
    assert tree_size(data_dir) == 10
    assert file_count(data_dir) == 1

    # staging directories never survive in the repository
    assert [path.name for path in backups_dir.iterdir()] == [result.archive_path.name]


def test_full_backup_records_metadata(tmp_path):
    data_dir, backups_dir, logger = _setup(tmp_path)

    result = create_full_backup(data_dir, backups_dir, logger=logger)
    metadata = read_metadata(result.archive_path)

    assert metadata is not None
    assert metadata.kind is BackupKind.FULL
    assert metadata.data_size == "10 B"
    assert metadata.runtime
    assert result.archive_path.name.endswith(f"{metadata.created}.zip")


def test_full_backups_in_same_second_get_unique_names(tmp_path, monkeypatch):
    data_dir, backups_dir, logger = _setup(tmp_path)
    monkeypatch.setattr("backup.create._timestamp", lambda: "20260101_120000")

    first = create_full_backup(data_dir, backups_dir, logger=logger)
    second = create_full_backup(data_dir, backups_dir, logger=logger)

    assert first.archive_path.name == "full_backup_20260101_120000.zip"
    assert second.archive_path.name == "full_backup_20260101_120000_1.zip"


def test_full_backup_of_missing_tree_creates_empty_data(tmp_path):
    backups_dir = tmp_path / "backups"
    logger = BackupLogger(tmp_path / "logs")

    result = create_full_backup(tmp_path / "missing", backups_dir, logger=logger)

    assert result.success
    with zipfile.ZipFile(result.archive_path) as archive:
        assert "data/" in archive.namelist()


def test_incremental_without_changes_is_noop(tmp_path):
    data_dir, backups_dir, logger = _setup(tmp_path)
    past = time.time() - 3600
    _set_mtime(data_dir / "a.txt", past)
    full = create_full_backup(data_dir, backups_dir, logger=logger)
    before = sorted(path.name for path in backups_dir.iterdir())

    result = create_incremental_backup(data_dir, backups_dir, logger=logger)

    assert result.success
    assert result.error_kind is ErrorKind.NO_CHANGES
    assert result.archive_path is None
    assert result.message == "No changes detected - incremental backup skipped"
    assert sorted(path.name for path in backups_dir.iterdir()) == before == [full.archive_path.name]


def test_incremental_copies_only_modified_files(tmp_path):
    data_dir, backups_dir, logger = _setup(tmp_path)
    (data_dir / "b" / "old.txt").write_text("unchanged", encoding="utf-8")
    baseline = time.time() - 3600
    for path in (data_dir / "a.txt", data_dir / "b" / "old.txt"):
        _set_mtime(path, baseline - 60)
    full = create_full_backup(data_dir, backups_dir, logger=logger)
    _set_mtime(full.archive_path, baseline)

    _set_mtime(data_dir / "a.txt", baseline + 10)
    (data_dir / "c.txt").write_text("new file", encoding="utf-8")
    _set_mtime(data_dir / "c.txt", baseline + 10)

    result = create_incremental_backup(data_dir, backups_dir, logger=logger)

    assert result.success
    assert result.error_kind is None
    assert result.kind is BackupKind.INCREMENTAL
    assert result.files_copied == 2
    assert result.archive_path.name.startswith("incremental_backup_")
    assert "(2 files," in result.message
    with zipfile.ZipFile(result.archive_path) as archive:
        names = {name for name in archive.namelist() if name.startswith("data/") and not name.endswith("/")}
    assert names == {"data/a.txt", "data/c.txt"}
    assert read_metadata(result.archive_path).kind is BackupKind.INCREMENTAL


def test_incremental_threshold_can_be_selected(tmp_path):
    data_dir, backups_dir, logger = _setup(tmp_path)
    now = time.time()
    _set_mtime(data_dir / "a.txt", now - 100)

    skipped = create_incremental_backup(data_dir, backups_dir, logger=logger, since=now - 50)
    captured = create_incremental_backup(data_dir, backups_dir, logger=logger, since=now - 200)

    assert skipped.error_kind is ErrorKind.NO_CHANGES
    assert captured.files_copied == 1


def test_last_backup_time_uses_newest_archive_mtime(tmp_path):
    backups_dir = tmp_path / "backups"
    assert last_backup_time(backups_dir) is None
    backups_dir.mkdir()
    for index, name in enumerate(["full_backup_1.zip", "incremental_backup_2.zip"]):
        path = backups_dir / name
        path.write_bytes(b"zip")
        _set_mtime(path, 1_000_000 + index * 100)
    (backups_dir / "pre_restore_backup_x").mkdir()

    assert last_backup_time(backups_dir) == 1_000_100
