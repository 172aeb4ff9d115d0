"""Create full and incremental archives of the managed data directory."""
from __future__ import annotations

import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from .codec import archive_directory
from .errors import BackupError
from .logs import BackupLogger
from .metadata import build_metadata, write_metadata
from .tree import copy_tree, delete_recursive, file_count, format_size, tree_size
from .types import BackupKind, BackupResult, ErrorKind

ARCHIVE_SUFFIX = ".zip"
DATA_DIRNAME = "data"

_PREFIXES = {
    BackupKind.FULL: "full_backup_",
    BackupKind.INCREMENTAL: "incremental_backup_",
}

Threshold = Union[float, int, datetime, None]


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


def archive_prefix(kind: BackupKind) -> str:
    return _PREFIXES[kind]


def unique_path(directory: Path, stem: str, suffix: str = "") -> Path:
    """Return ``directory/stem+suffix``, appending ``_N`` while the name is taken."""

    candidate = directory / f"{stem}{suffix}"
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem}_{counter}{suffix}"
        counter += 1
    return candidate


def _make_staging(backups_dir: Path, stem: str) -> Path:
    backups_dir.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=f".staging_{stem}_", dir=backups_dir))


def _drop_staging(staging: Path, *, logger: BackupLogger) -> None:
    if staging.exists() and not delete_recursive(staging):
        logger.warning("staging_cleanup_failed", path=str(staging))


def last_backup_time(backups_dir: Path) -> Optional[float]:
    """Return the mtime of the most recently modified archive in *backups_dir*."""

    if not backups_dir.exists():
        return None
    latest: Optional[float] = None
    for candidate in backups_dir.glob(f"*{ARCHIVE_SUFFIX}"):
        if not candidate.is_file():
            continue
        try:
            mtime = candidate.stat().st_mtime
        except OSError:
            continue
        if latest is None or mtime > latest:
            latest = mtime
    return latest


def _threshold_seconds(since: Threshold, backups_dir: Path) -> float:
    if since is None:
        return last_backup_time(backups_dir) or 0.0
    if isinstance(since, datetime):
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return since.timestamp()
    return float(since)


def _copy_modified_files(source: Path, destination: Path, threshold: float) -> int:
    if not source.is_dir():
        return 0
    copied = 0
    for root, _dirs, files in os.walk(source):
        root_path = Path(root)
        for name in files:
            item = root_path / name
            try:
                if not item.is_file() or item.stat().st_mtime <= threshold:
                    continue
            except OSError:
                continue
            target = destination / item.relative_to(source)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, target)
            copied += 1
    return copied


def _compress(
    staging: Path,
    backups_dir: Path,
    *,
    kind: BackupKind,
    stamp: str,
    data_dir: Path,
    logger: BackupLogger,
) -> tuple[Path, int, int]:
    write_metadata(staging, build_metadata(kind, stamp, data_dir))
    archive_path = unique_path(backups_dir, f"{archive_prefix(kind)}{stamp}", ARCHIVE_SUFFIX)
    archive_directory(staging, archive_path)
    original_size = tree_size(staging)
    compressed_size = archive_path.stat().st_size
    logger.info(
        "archive_written",
        path=str(archive_path),
        kind=kind.value,
        original=original_size,
        compressed=compressed_size,
    )
    return archive_path, original_size, compressed_size


def create_full_backup(data_dir: Path, backups_dir: Path, *, logger: BackupLogger) -> BackupResult:
    """Archive the whole of *data_dir* into a new ``full_backup_*.zip``."""

    stamp = _timestamp()
    staging = _make_staging(backups_dir, f"{archive_prefix(BackupKind.FULL)}{stamp}")
    logger.event(event="backup_start", phase="create", ok=True, kind=BackupKind.FULL.value)
    try:
        staged_data = staging / DATA_DIRNAME
        if data_dir.exists():
            if not data_dir.is_dir():
                raise BackupError(f"data directory {data_dir} is not a directory")
            copy_tree(data_dir, staged_data)
        else:
            staged_data.mkdir(parents=True, exist_ok=True)
        files = file_count(staged_data)
        logger.debug("data_staged", staging=str(staging), files=files)
        archive_path, original_size, compressed_size = _compress(
            staging,
            backups_dir,
            kind=BackupKind.FULL,
            stamp=stamp,
            data_dir=data_dir,
            logger=logger,
        )
    finally:
        _drop_staging(staging, logger=logger)

    logger.event(event="backup_complete", phase="create", ok=True, kind=BackupKind.FULL.value, id=archive_path.name)
    return BackupResult(
        success=True,
        message=(
            f"Full backup created: {archive_path.name} "
            f"(Original: {format_size(original_size)}, Compressed: {format_size(compressed_size)})"
        ),
        archive_path=archive_path,
        original_size=original_size,
        compressed_size=compressed_size,
        files_copied=files,
        kind=BackupKind.FULL,
    )


def create_incremental_backup(
    data_dir: Path,
    backups_dir: Path,
    *,
    logger: BackupLogger,
    since: Threshold = None,
) -> BackupResult:
    """Archive files of *data_dir* modified after *since*.

    When *since* is omitted the threshold is the modification time of the most
    recently modified archive in *backups_dir*.
    """

    threshold = _threshold_seconds(since, backups_dir)
    stamp = _timestamp()
    staging = _make_staging(backups_dir, f"{archive_prefix(BackupKind.INCREMENTAL)}{stamp}")
    logger.event(
        event="backup_start",
        phase="create",
        ok=True,
        kind=BackupKind.INCREMENTAL.value,
        threshold=threshold,
    )
    try:
        copied = _copy_modified_files(data_dir, staging / DATA_DIRNAME, threshold)
        logger.debug("data_staged", staging=str(staging), files=copied)
        if copied == 0:
            logger.info("backup_skipped", kind=BackupKind.INCREMENTAL.value, reason="no_changes")
            return BackupResult(
                success=True,
                message="No changes detected - incremental backup skipped",
                kind=BackupKind.INCREMENTAL,
                error_kind=ErrorKind.NO_CHANGES,
            )
        archive_path, original_size, compressed_size = _compress(
            staging,
            backups_dir,
            kind=BackupKind.INCREMENTAL,
            stamp=stamp,
            data_dir=data_dir,
            logger=logger,
        )
    finally:
        _drop_staging(staging, logger=logger)

    logger.event(
        event="backup_complete",
        phase="create",
        ok=True,
        kind=BackupKind.INCREMENTAL.value,
        id=archive_path.name,
        files=copied,
    )
    return BackupResult(
        success=True,
        message=(
            f"Incremental backup created: {archive_path.name} "
            f"({copied} files, {format_size(compressed_size)} compressed)"
        ),
        archive_path=archive_path,
        original_size=original_size,
        compressed_size=compressed_size,
        files_copied=copied,
        kind=BackupKind.INCREMENTAL,
    )


__all__ = [
    "ARCHIVE_SUFFIX",
    "DATA_DIRNAME",
    "archive_prefix",
    "create_full_backup",
    "create_incremental_backup",
    "last_backup_time",
    "unique_path",
]
