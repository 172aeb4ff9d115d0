"""Public API for backup operations."""
from __future__ import annotations

import contextlib
import os
import threading
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from core.paths import get_backups_dir, get_data_dir, get_logs_dir

from .create import create_full_backup, create_incremental_backup
from .errors import BackupNotFoundError, BackupStructureError
from .logs import BackupLogger
from .restore import restore_backup
from .retention import RetentionPolicy, apply_retention, list_backups
from .tree import file_count, find_by_extension, max_depth, render_tree, tree_size
from .types import (
    BackupConfig,
    BackupRecord,
    BackupResult,
    CleanupResult,
    ErrorKind,
    RestoreResult,
    TreeReport,
)

_BUSY_MESSAGE = "Another backup operation is already in progress"


def _int_setting(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def config_from_settings(working_dir: Path, settings: Optional[Dict[str, Any]] = None) -> BackupConfig:
    """Build a :class:`BackupConfig` from the ``backup`` section of settings.json."""

    raw = (settings or {}).get("backup")
    section = raw if isinstance(raw, dict) else {}
    retention = section.get("retention") if isinstance(section.get("retention"), dict) else {}
    data_dir = section.get("data_dir")
    backups_dir = section.get("backups_dir")
    debug = bool(section.get("debug", False)) or bool(os.environ.get("DATAVAULT_DEBUG"))
    return BackupConfig(
        data_dir=Path(data_dir).expanduser() if data_dir else get_data_dir(working_dir),
        backups_dir=Path(backups_dir).expanduser() if backups_dir else get_backups_dir(working_dir),
        max_backups=_int_setting(retention.get("max_backups"), 10),
        days_to_keep=_int_setting(retention.get("days_to_keep"), 30),
        debug=debug,
        logs_dir=get_logs_dir(working_dir),
    )


def _classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, BackupNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, BackupStructureError):
        return ErrorKind.INVALID_STRUCTURE
    return ErrorKind.IO_FAILURE


class BackupRecordModel(BaseModel):
    file_name: str
    size_bytes: int
    created_at: datetime
    kind: str


class BackupListResponse(BaseModel):
    backups: List[BackupRecordModel] = Field(default_factory=list)


class IncrementalRequest(BaseModel):
    since: Optional[datetime] = Field(None, description="Override the change threshold (defaults to the newest archive).")


class RestoreRequest(BaseModel):
    file_name: str


class CleanupRequest(BaseModel):
    max_backups: Optional[int] = Field(None, ge=0)
    days_to_keep: Optional[int] = Field(None, ge=1)


class OperationResponse(BaseModel):
    success: bool
    message: str
    error_kind: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class StatsResponse(BaseModel):
    root: str
    exists: bool
    size_bytes: int
    file_count: int
    max_depth: int
    tree: str


class BackupService:
    """Coordinate backup, restore, listing, and retention for one managed tree.

    Every public operation returns a result value; errors never propagate.
    """

    def __init__(self, config: BackupConfig, *, logger: Optional[BackupLogger] = None) -> None:
        self._config = config
        self._data_dir = Path(config.data_dir)
        self._backups_dir = Path(config.backups_dir)
        self._backups_dir.mkdir(parents=True, exist_ok=True)
        self._logger = logger or BackupLogger(config.resolved_logs_dir(), debug=config.debug)
        self._busy = threading.Lock()

    # ------------------------------------------------------------------
    @property
    def config(self) -> BackupConfig:
        return self._config

    @contextlib.contextmanager
    def _exclusive(self):
        acquired = self._busy.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._busy.release()

    def _report_failure(self, phase: str, exc: BaseException) -> None:
        extra: Dict[str, Any] = {"error": str(exc), "error_type": type(exc).__name__}
        if self._config.debug:
            extra["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self._logger.event(event=f"{phase}_failed", phase=phase, ok=False, **extra)

    # ------------------------------------------------------------------
    def create_full_backup(self) -> BackupResult:
        with self._exclusive() as acquired:
            if not acquired:
                return BackupResult(success=False, message=_BUSY_MESSAGE, error_kind=ErrorKind.BUSY)
            try:
                return create_full_backup(self._data_dir, self._backups_dir, logger=self._logger)
            except Exception as exc:
                self._report_failure("create", exc)
                return BackupResult(success=False, message=f"Backup failed: {exc}", error_kind=_classify(exc))

    def create_incremental_backup(self, since: Optional[datetime | float] = None) -> BackupResult:
        with self._exclusive() as acquired:
            if not acquired:
                return BackupResult(success=False, message=_BUSY_MESSAGE, error_kind=ErrorKind.BUSY)
            try:
                return create_incremental_backup(
                    self._data_dir,
                    self._backups_dir,
                    logger=self._logger,
                    since=since,
                )
            except Exception as exc:
                self._report_failure("create", exc)
                return BackupResult(
                    success=False,
                    message=f"Incremental backup failed: {exc}",
                    error_kind=_classify(exc),
                )

    # ------------------------------------------------------------------
    def restore_backup(self, file_name: str) -> RestoreResult:
        with self._exclusive() as acquired:
            if not acquired:
                return RestoreResult(success=False, message=_BUSY_MESSAGE, error_kind=ErrorKind.BUSY)
            try:
                return restore_backup(self._data_dir, self._backups_dir, file_name, logger=self._logger)
            except (BackupNotFoundError, BackupStructureError) as exc:
                self._report_failure("restore", exc)
                return RestoreResult(success=False, message=str(exc), error_kind=_classify(exc))
            except Exception as exc:
                self._report_failure("restore", exc)
                return RestoreResult(success=False, message=f"Restore failed: {exc}", error_kind=_classify(exc))

    # ------------------------------------------------------------------
    def list_backups(self) -> List[BackupRecord]:
        try:
            return list_backups(self._backups_dir, logger=self._logger)
        except Exception as exc:
            self._report_failure("list", exc)
            return []

    def cleanup_old_backups(
        self,
        max_backups: Optional[int] = None,
        days_to_keep: Optional[int] = None,
    ) -> CleanupResult:
        with self._exclusive() as acquired:
            if not acquired:
                return CleanupResult(success=False, message=_BUSY_MESSAGE, error_kind=ErrorKind.BUSY)
            try:
                policy = RetentionPolicy(
                    max_backups=self._config.max_backups if max_backups is None else int(max_backups),
                    days_to_keep=self._config.days_to_keep if days_to_keep is None else int(days_to_keep),
                )
                return apply_retention(self._backups_dir, policy, logger=self._logger)
            except Exception as exc:
                self._report_failure("retention", exc)
                return CleanupResult(success=False, message=f"Cleanup failed: {exc}", error_kind=_classify(exc))

    # ------------------------------------------------------------------
    def tree_report(self, *, extension: Optional[str] = None, include_tree: bool = True) -> TreeReport:
        root = self._data_dir
        try:
            return TreeReport(
                root=root,
                exists=root.exists(),
                size_bytes=tree_size(root),
                file_count=file_count(root),
                max_depth=max_depth(root),
                tree=render_tree(root) if include_tree else "",
                matches=find_by_extension(root, extension) if extension else [],
            )
        except Exception as exc:
            self._report_failure("stats", exc)
            return TreeReport(root=root, exists=False, size_bytes=0, file_count=0, max_depth=0)

    # ------------------------------------------------------------------
    def router(self) -> APIRouter:
        router = APIRouter(prefix="/v1/backup", tags=["backup"])

        def respond(result: BackupResult | RestoreResult | CleanupResult, details: Dict[str, Any]) -> OperationResponse:
            if result.error_kind is ErrorKind.BUSY:
                raise HTTPException(status_code=409, detail=result.message)
            if result.error_kind is ErrorKind.NOT_FOUND:
                raise HTTPException(status_code=404, detail=result.message)
            return OperationResponse(
                success=result.success,
                message=result.message,
                error_kind=result.error_kind.value if result.error_kind else None,
                details=details,
            )

        def backup_details(result: BackupResult) -> Dict[str, Any]:
            return {
                "archive": result.archive_path.name if result.archive_path else None,
                "original_size": result.original_size,
                "compressed_size": result.compressed_size,
                "files_copied": result.files_copied,
                "compression_ratio": result.compression_ratio,
            }

        @router.get("/list", response_model=BackupListResponse)
        def list_route() -> BackupListResponse:
            records = [
                BackupRecordModel(
                    file_name=record.file_name,
                    size_bytes=record.size_bytes,
                    created_at=record.created_at,
                    kind=record.kind.value,
                )
                for record in self.list_backups()
            ]
            return BackupListResponse(backups=records)

        @router.post("/full", response_model=OperationResponse)
        def full_route() -> OperationResponse:
            result = self.create_full_backup()
            return respond(result, backup_details(result))

        @router.post("/incremental", response_model=OperationResponse)
        def incremental_route(request: Optional[IncrementalRequest] = None) -> OperationResponse:
            since = request.since if request is not None else None
            result = self.create_incremental_backup(since=since)
            return respond(result, backup_details(result))

        @router.post("/restore", response_model=OperationResponse)
        def restore_route(request: RestoreRequest) -> OperationResponse:
            result = self.restore_backup(request.file_name)
            return respond(
                result,
                {
                    "files_restored": result.files_restored,
                    "safety_snapshot": result.safety_snapshot.name if result.safety_snapshot else None,
                },
            )

        @router.post("/cleanup", response_model=OperationResponse)
        def cleanup_route(request: Optional[CleanupRequest] = None) -> OperationResponse:
            request = request or CleanupRequest()
            result = self.cleanup_old_backups(request.max_backups, request.days_to_keep)
            return respond(
                result,
                {
                    "backups_deleted": result.backups_deleted,
                    "bytes_freed": result.bytes_freed,
                    "deleted": list(result.deleted),
                },
            )

        @router.get("/stats", response_model=StatsResponse)
        def stats_route() -> StatsResponse:
            report = self.tree_report()
            return StatsResponse(
                root=str(report.root),
                exists=report.exists,
                size_bytes=report.size_bytes,
                file_count=report.file_count,
                max_depth=report.max_depth,
                tree=report.tree,
            )

        return router


__all__ = [
    "BackupService",
    "OperationResponse",
    "config_from_settings",
]
