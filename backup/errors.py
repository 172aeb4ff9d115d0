"""Error hierarchy for backup operations."""
from __future__ import annotations


class BackupError(RuntimeError):
    """Base exception for backup related failures."""


class BackupNotFoundError(BackupError):
    """Raised when a referenced archive does not exist in the repository."""


class BackupStructureError(BackupError):
    """Raised when an archive lacks the expected ``data/`` layout."""


class BackupRestoreError(BackupError):
    """Raised when restoring a snapshot fails."""


class ArchiveError(BackupError):
    """Raised when building or extracting an archive fails."""


class UnsafeArchiveEntryError(ArchiveError):
    """Raised when an archive entry would resolve outside the extraction root."""


__all__ = [
    "ArchiveError",
    "BackupError",
    "BackupNotFoundError",
    "BackupRestoreError",
    "BackupStructureError",
    "UnsafeArchiveEntryError",
]
