"""Common dataclasses shared across backup modules."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional


class BackupKind(str, Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class ErrorKind(str, Enum):
    """Outcome classification carried by operation results."""

    NOT_FOUND = "not_found"
    INVALID_STRUCTURE = "invalid_structure"
    IO_FAILURE = "io_failure"
    NO_CHANGES = "no_changes"
    BUSY = "busy"


@dataclass(frozen=True, slots=True)
class BackupConfig:
    """Paths and retention thresholds handed to :class:`BackupService`."""

    data_dir: Path
    backups_dir: Path
    max_backups: int = 10
    days_to_keep: int = 30
    debug: bool = False
    logs_dir: Optional[Path] = None

    def resolved_logs_dir(self) -> Path:
        if self.logs_dir is not None:
            return Path(self.logs_dir)
        return Path(self.backups_dir).parent / "logs"


@dataclass(frozen=True, slots=True)
class BackupMetadata:
    """Contents of the ``backup_metadata.txt`` record stored in every archive."""

    kind: BackupKind
    created: str
    system: str
    runtime: str
    data_size: str


@dataclass(frozen=True, slots=True)
class BackupRecord:
    file_name: str
    size_bytes: int
    created_at: datetime
    kind: BackupKind
    path: Path


@dataclass(frozen=True, slots=True)
class BackupResult:
    success: bool
    message: str
    archive_path: Optional[Path] = None
    original_size: int = 0
    compressed_size: int = 0
    files_copied: int = 0
    kind: Optional[BackupKind] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def compression_ratio(self) -> float:
        if self.original_size <= 0:
            return 0.0
        return self.compressed_size / self.original_size


@dataclass(frozen=True, slots=True)
class RestoreResult:
    success: bool
    message: str
    files_restored: int = 0
    safety_snapshot: Optional[Path] = None
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True, slots=True)
class CleanupResult:
    success: bool
    message: str
    backups_deleted: int = 0
    bytes_freed: int = 0
    deleted: List[str] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True, slots=True)
class TreeReport:
    """Summary of the managed tree used by the CLI and HTTP stats view."""

    root: Path
    exists: bool
    size_bytes: int
    file_count: int
    max_depth: int
    tree: str = ""
    matches: List[Path] = field(default_factory=list)


__all__ = [
    "BackupConfig",
    "BackupKind",
    "BackupMetadata",
    "BackupRecord",
    "BackupResult",
    "CleanupResult",
    "ErrorKind",
    "RestoreResult",
    "TreeReport",
]
