"""Versioned archive snapshots of a managed data directory."""
from __future__ import annotations

from .api import BackupService, config_from_settings
from .errors import BackupError
from .retention import RetentionPolicy
from .types import (
    BackupConfig,
    BackupKind,
    BackupRecord,
    BackupResult,
    CleanupResult,
    ErrorKind,
    RestoreResult,
)

__all__ = [
    "BackupConfig",
    "BackupError",
    "BackupKind",
    "BackupRecord",
    "BackupResult",
    "BackupService",
    "CleanupResult",
    "ErrorKind",
    "RestoreResult",
    "RetentionPolicy",
    "config_from_settings",
]
