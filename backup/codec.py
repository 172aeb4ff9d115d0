"""Zip codec used to bundle staging directories and unpack archives."""
from __future__ import annotations

import logging
import shutil
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional

from .errors import ArchiveError, UnsafeArchiveEntryError

LOGGER = logging.getLogger("datavault.backup.codec")

_CHUNK_SIZE = 1024 * 1024


def archive_directory(source_dir: Path, dest_file: Path) -> int:
    """Write every file and directory under *source_dir* into *dest_file*.

    Entry names are POSIX paths relative to *source_dir*. Returns the number of
    file entries written. On failure the partially written archive is removed
    and :class:`ArchiveError` is raised.
    """

    source_dir = Path(source_dir)
    dest_file = Path(dest_file)
    if not source_dir.is_dir():
        raise ArchiveError(f"archive source {source_dir} is not a directory")
    dest_resolved = dest_file.resolve()
    written = 0
    try:
        with zipfile.ZipFile(
            dest_file, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False
        ) as archive:
            for item in sorted(source_dir.rglob("*")):
                if item.resolve() == dest_resolved:
                    continue
                arcname = item.relative_to(source_dir).as_posix()
                if item.is_dir():
                    archive.write(item, arcname)
                    continue
                if not item.is_file():
                    continue
                archive.write(item, arcname)
                written += 1
    except (OSError, zipfile.BadZipFile, ValueError) as exc:
        dest_file.unlink(missing_ok=True)
        raise ArchiveError(f"failed to build archive {dest_file.name}: {exc}") from exc
    LOGGER.debug("archived %s files from %s into %s", written, source_dir, dest_file)
    return written


def _resolve_member(dest_root: Path, name: str) -> Path:
    normalized = name.replace("\\", "/")
    pure = PurePosixPath(normalized)
    if pure.is_absolute() or (pure.parts and ":" in pure.parts[0]):
        raise UnsafeArchiveEntryError(f"archive entry {name!r} is an absolute path")
    if not pure.parts:
        raise UnsafeArchiveEntryError(f"archive entry {name!r} is empty")
    target = dest_root.joinpath(*pure.parts).resolve()
    if target == dest_root or not target.is_relative_to(dest_root):
        raise UnsafeArchiveEntryError(f"archive entry {name!r} escapes the extraction directory")
    return target


def extract_archive(archive_file: Path, dest_dir: Path) -> int:
    """Unpack *archive_file* below *dest_dir* and return the number of files written.

    Every entry is checked to stay inside *dest_dir* before anything is written.
    """

    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest_root = dest_dir.resolve()
    extracted = 0
    try:
        with zipfile.ZipFile(archive_file, "r") as archive:
            members = archive.infolist()
            targets = [(info, _resolve_member(dest_root, info.filename)) for info in members]
            for info, target in targets:
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info, "r") as src, target.open("wb") as dst:
                    shutil.copyfileobj(src, dst, _CHUNK_SIZE)
                extracted += 1
    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
        raise ArchiveError(f"failed to extract {Path(archive_file).name}: {exc}") from exc
    LOGGER.debug("extracted %s files from %s into %s", extracted, archive_file, dest_dir)
    return extracted


def read_member(archive_file: Path, name: str) -> Optional[bytes]:
    """Return the bytes of entry *name*, or ``None`` when it is absent."""

    with zipfile.ZipFile(archive_file, "r") as archive:
        try:
            return archive.read(name)
        except KeyError:
            return None


__all__ = ["archive_directory", "extract_archive", "read_member"]
