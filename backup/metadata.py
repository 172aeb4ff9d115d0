"""Read and write the ``backup_metadata.txt`` record stored in each archive."""
from __future__ import annotations

import platform
from pathlib import Path
from typing import Dict, Optional

from .codec import read_member
from .tree import format_size, tree_size
from .types import BackupKind, BackupMetadata

METADATA_NAME = "backup_metadata.txt"

_FIELDS = (
    ("kind", "Backup Type"),
    ("created", "Created"),
    ("system", "System"),
    ("runtime", "Python Version"),
    ("data_size", "Data Directory Size"),
)


def build_metadata(kind: BackupKind, created: str, data_dir: Path) -> BackupMetadata:
    return BackupMetadata(
        kind=kind,
        created=created,
        system=platform.system() or "unknown",
        runtime=platform.python_version(),
        data_size=format_size(tree_size(data_dir)),
    )


def write_metadata(staging_dir: Path, metadata: BackupMetadata) -> Path:
    path = Path(staging_dir) / METADATA_NAME
    values = {
        "kind": metadata.kind.value,
        "created": metadata.created,
        "system": metadata.system,
        "runtime": metadata.runtime,
        "data_size": metadata.data_size,
    }
    with path.open("w", encoding="utf-8") as handle:
        for attr, label in _FIELDS:
            handle.write(f"{label}: {values[attr]}\n")
    return path


def parse_metadata(text: str) -> Optional[BackupMetadata]:
    """Parse a metadata record; returns ``None`` when the backup kind is unreadable."""

    labels = {label: attr for attr, label in _FIELDS}
    values: Dict[str, str] = {}
    for line in text.splitlines():
        label, sep, value = line.partition(":")
        if not sep:
            continue
        attr = labels.get(label.strip())
        if attr:
            values[attr] = value.strip()
    try:
        kind = BackupKind(values.get("kind", "").upper())
    except ValueError:
        return None
    return BackupMetadata(
        kind=kind,
        created=values.get("created", ""),
        system=values.get("system", ""),
        runtime=values.get("runtime", ""),
        data_size=values.get("data_size", ""),
    )


def read_metadata(archive_path: Path) -> Optional[BackupMetadata]:
    raw = read_member(archive_path, METADATA_NAME)
    if raw is None:
        return None
    return parse_metadata(raw.decode("utf-8", errors="replace"))


__all__ = ["METADATA_NAME", "build_metadata", "parse_metadata", "read_metadata", "write_metadata"]
