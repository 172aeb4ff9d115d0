"""Retention policy enforcement for backups."""
from __future__ import annotations

import zipfile
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from .create import ARCHIVE_SUFFIX, archive_prefix
from .logs import BackupLogger
from .metadata import read_metadata
from .tree import format_size
from .types import BackupKind, BackupRecord, CleanupResult

# Errors zipfile raises for damaged or unsupported members.
_UNREADABLE = (OSError, EOFError, zipfile.BadZipFile, zlib.error, RuntimeError, NotImplementedError)


@dataclass(slots=True)
class RetentionPolicy:
    max_backups: int = 10
    days_to_keep: int = 30

    def __post_init__(self) -> None:
        if self.max_backups < 0:
            raise ValueError("max_backups must not be negative")
        if self.days_to_keep < 1:
            raise ValueError("days_to_keep must be at least 1")


def infer_kind(archive_path: Path, *, logger: Optional[BackupLogger] = None) -> BackupKind:
    """Return the kind recorded inside the archive, falling back to its name."""

    try:
        metadata = read_metadata(archive_path)
    except _UNREADABLE as exc:
        if logger is not None:
            logger.warning("backup_unreadable", path=str(archive_path), error=str(exc))
        metadata = None
    if metadata is not None:
        return metadata.kind
    if archive_path.name.startswith(archive_prefix(BackupKind.INCREMENTAL)):
        return BackupKind.INCREMENTAL
    return BackupKind.FULL


def list_backups(backups_dir: Path, *, logger: Optional[BackupLogger] = None) -> List[BackupRecord]:
    """Return every archive in *backups_dir*, newest first by modification time."""

    records: List[BackupRecord] = []
    if not backups_dir.exists():
        return records
    for child in backups_dir.iterdir():
        if not child.name.endswith(ARCHIVE_SUFFIX) or not child.is_file():
            continue
        try:
            stat = child.stat()
        except OSError as exc:
            if logger is not None:
                logger.warning("backup_unreadable", path=str(child), error=str(exc))
            continue
        records.append(
            BackupRecord(
                file_name=child.name,
                size_bytes=stat.st_size,
                created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                kind=infer_kind(child, logger=logger),
                path=child,
            )
        )
    records.sort(key=lambda record: record.created_at, reverse=True)
    return records


def select_expired(
    records: List[BackupRecord], policy: RetentionPolicy, *, now: Optional[datetime] = None
) -> List[BackupRecord]:
    """Pick archives ranked past ``max_backups`` that are older than the cutoff."""

    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(days=policy.days_to_keep)
    # The newest max_backups archives survive regardless of age.
    return [
        record
        for index, record in enumerate(records)
        if index >= policy.max_backups and record.created_at < cutoff
    ]


def apply_retention(
    backups_dir: Path,
    policy: RetentionPolicy,
    *,
    logger: BackupLogger,
    now: Optional[datetime] = None,
) -> CleanupResult:
    records = list_backups(backups_dir, logger=logger)
    expired = select_expired(records, policy, now=now)

    deleted: List[str] = []
    freed = 0
    for record in expired:
        if not record.path.exists():
            continue
        size = record.path.stat().st_size
        record.path.unlink()
        deleted.append(record.file_name)
        freed += size
        logger.warning("backup_removed", id=record.file_name, reason="retention", size=size)

    logger.event(
        event="retention_applied",
        phase="retention",
        ok=True,
        removed=len(deleted),
        kept=len(records) - len(deleted),
        freed=freed,
    )
    return CleanupResult(
        success=True,
        message=f"Cleaned up {len(deleted)} old backups, freed {format_size(freed)}",
        backups_deleted=len(deleted),
        bytes_freed=freed,
        deleted=deleted,
    )


__all__ = ["RetentionPolicy", "apply_retention", "infer_kind", "list_backups", "select_expired"]
