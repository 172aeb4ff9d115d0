"""Restore an archive over the managed data directory with a safety snapshot."""
from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .codec import extract_archive
from .create import DATA_DIRNAME, unique_path
from .errors import BackupNotFoundError, BackupRestoreError, BackupStructureError
from .logs import BackupLogger
from .tree import copy_tree, delete_recursive, file_count
from .types import RestoreResult

SAFETY_PREFIX = "pre_restore_backup_"


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


def _resolve_archive(backups_dir: Path, file_name: str) -> Path:
    if not file_name or Path(file_name).name != file_name or file_name in {".", ".."}:
        raise BackupNotFoundError(f"Backup file not found: {file_name}")
    archive_path = backups_dir / file_name
    if not archive_path.is_file():
        raise BackupNotFoundError(f"Backup file not found: {file_name}")
    return archive_path


def create_safety_snapshot(data_dir: Path, backups_dir: Path, *, logger: BackupLogger) -> Path:
    """Copy *data_dir* uncompressed into a ``pre_restore_backup_*`` directory."""

    snapshot = unique_path(backups_dir, f"{SAFETY_PREFIX}{_timestamp()}")
    snapshot.mkdir(parents=True)
    copy_tree(data_dir, snapshot)
    logger.info("safety_snapshot", path=str(snapshot), files=file_count(snapshot))
    return snapshot


def _swap_into_place(source: Path, data_dir: Path, *, logger: BackupLogger) -> None:
    """Replace *data_dir* with a copy of *source* without leaving it missing."""

    parent = data_dir.parent
    parent.mkdir(parents=True, exist_ok=True)
    staged = Path(tempfile.mkdtemp(prefix=f".{data_dir.name}.restore_", dir=parent))
    try:
        copy_tree(source, staged)
    except Exception:
        delete_recursive(staged)
        raise

    retired: Optional[Path] = None
    if data_dir.exists():
        retired = unique_path(parent, f".{data_dir.name}.retired_{_timestamp()}")
        os.replace(data_dir, retired)
    try:
        os.replace(staged, data_dir)
    except OSError as exc:
        logger.error("restore_swap_failed", path=str(data_dir), error=str(exc), rolled_back=retired is not None)
        if retired is not None:
            os.replace(retired, data_dir)
        delete_recursive(staged)
        raise
    if retired is not None and not delete_recursive(retired):
        logger.warning("retired_cleanup_failed", path=str(retired))


def restore_backup(
    data_dir: Path,
    backups_dir: Path,
    file_name: str,
    *,
    logger: BackupLogger,
) -> RestoreResult:
    archive_path = _resolve_archive(backups_dir, file_name)
    logger.event(event="restore_start", phase="restore", ok=True, id=file_name)

    temp_dir = Path(tempfile.mkdtemp(prefix="restore_temp_", dir=backups_dir))
    safety_snapshot: Optional[Path] = None
    try:
        entries = extract_archive(archive_path, temp_dir)
        logger.debug("archive_extracted", id=file_name, temp_dir=str(temp_dir), files=entries)
        extracted_data = temp_dir / DATA_DIRNAME
        if not extracted_data.is_dir():
            raise BackupStructureError(f"Invalid backup structure: {file_name} has no {DATA_DIRNAME}/ directory")

        if data_dir.exists():
            safety_snapshot = create_safety_snapshot(data_dir, backups_dir, logger=logger)

        _swap_into_place(extracted_data, data_dir, logger=logger)
        restored = file_count(data_dir)
    finally:
        if temp_dir.exists() and not delete_recursive(temp_dir):
            logger.warning("restore_temp_cleanup_failed", path=str(temp_dir))

    if not data_dir.is_dir():
        raise BackupRestoreError(f"restored data directory {data_dir} is missing")

    logger.event(event="backup_restored", phase="restore", ok=True, id=file_name, files=restored)
    return RestoreResult(
        success=True,
        message=f"Successfully restored {restored} files from {file_name}",
        files_restored=restored,
        safety_snapshot=safety_snapshot,
    )


__all__ = ["SAFETY_PREFIX", "create_safety_snapshot", "restore_backup"]
