"""Iterative helpers measuring and manipulating directory trees."""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Iterator, List, Tuple, Union

LOGGER = logging.getLogger("datavault.backup.tree")

PathLike = Union[str, os.PathLike[str]]

_SIZE_UNITS = "KMGTPE"


def _iter_entries(root: Path) -> Iterator[os.DirEntry]:
    """Yield every entry below *root* without recursing on the call stack."""

    stack: List[Path] = [root]
    while stack:
        current = stack.pop()
        with os.scandir(current) as entries:
            for entry in entries:
                yield entry
                if entry.is_dir(follow_symlinks=False):
                    stack.append(Path(entry.path))


def tree_size(path: PathLike) -> int:
    """Return the total byte size of *path*; 0 when it does not exist."""

    root = Path(path)
    if not root.exists():
        return 0
    if not root.is_dir():
        return root.stat().st_size
    total = 0
    for entry in _iter_entries(root):
        if entry.is_file():
            total += entry.stat().st_size
    return total


def file_count(path: PathLike) -> int:
    """Return the number of regular files under *path*."""

    root = Path(path)
    if not root.exists():
        return 0
    if not root.is_dir():
        return 1
    return sum(1 for entry in _iter_entries(root) if entry.is_file())


def find_by_extension(path: PathLike, extension: str) -> List[Path]:
    """Return files under *path* whose name ends in ``.extension`` (any case)."""

    suffix = "." + extension.lstrip(".").lower()
    root = Path(path)
    if not root.exists():
        return []
    if not root.is_dir():
        return [root] if root.name.lower().endswith(suffix) else []
    matches = [
        Path(entry.path)
        for entry in _iter_entries(root)
        if entry.is_file() and entry.name.lower().endswith(suffix)
    ]
    return sorted(matches)


def _sorted_children(directory: Path) -> List[Path]:
    try:
        return sorted(directory.iterdir(), key=lambda item: item.name)
    except OSError as exc:
        LOGGER.debug("cannot list %s: %s", directory, exc)
        return []


def render_tree(path: PathLike) -> str:
    """Return a printable tree of *path* drawn with box connectors."""

    root = Path(path)
    if not root.exists():
        return ""
    lines = [root.name or str(root)]
    # Each frame holds a child path and the prefix inherited from its parent.
    stack: List[Tuple[Path, str, bool]] = []
    children = _sorted_children(root) if root.is_dir() else []
    for index in range(len(children) - 1, -1, -1):
        stack.append((children[index], "", index == len(children) - 1))
    while stack:
        item, prefix, is_last = stack.pop()
        connector = "└── " if is_last else "├── "
        lines.append(f"{prefix}{connector}{item.name}")
        if item.is_dir() and not item.is_symlink():
            nested = _sorted_children(item)
            child_prefix = prefix + ("    " if is_last else "│   ")
            for index in range(len(nested) - 1, -1, -1):
                stack.append((nested[index], child_prefix, index == len(nested) - 1))
    return "\n".join(lines) + "\n"


def max_depth(path: PathLike) -> int:
    """Return the directory nesting depth of *path*; a leaf directory is 1."""

    root = Path(path)
    if not root.exists() or not root.is_dir():
        return 0
    deepest = 1
    stack: List[Tuple[Path, int]] = [(root, 1)]
    while stack:
        current, depth = stack.pop()
        deepest = max(deepest, depth)
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    if entry.is_dir(follow_symlinks=False):
                        stack.append((Path(entry.path), depth + 1))
        except OSError as exc:
            LOGGER.debug("cannot list %s: %s", current, exc)
    return deepest


def delete_recursive(path: PathLike) -> bool:
    """Delete *path* and everything below it, deepest entries first.

    Returns ``False`` when the path does not exist or when any entry could not
    be removed; deletion stops at the first failure.
    """

    root = Path(path)
    if not root.exists() and not root.is_symlink():
        return False
    ordered: List[Tuple[Path, bool]] = []
    if root.is_dir() and not root.is_symlink():
        try:
            for entry in _iter_entries(root):
                ordered.append((Path(entry.path), entry.is_dir(follow_symlinks=False)))
        except OSError as exc:
            LOGGER.warning("failed to list %s: %s", root, exc)
            return False
        ordered.sort(key=lambda item: len(item[0].parts), reverse=True)
        ordered.append((root, True))
    else:
        ordered.append((root, False))
    for item, is_dir in ordered:
        try:
            if is_dir:
                item.rmdir()
            else:
                item.unlink()
        except OSError as exc:
            LOGGER.warning("failed to delete %s: %s", item, exc)
            return False
    return True


def copy_tree(source: PathLike, destination: PathLike) -> None:
    """Copy every file and directory of *source* into *destination*, overwriting."""

    shutil.copytree(Path(source), Path(destination), dirs_exist_ok=True)


def format_size(size_bytes: int) -> str:
    """Return a human readable byte count such as ``"1.5 KB"``."""

    if size_bytes < 1024:
        return f"{size_bytes} B"
    value = float(size_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(_SIZE_UNITS):
        value /= 1024
        exponent += 1
    return f"{value:.1f} {_SIZE_UNITS[exponent - 1]}B"


__all__ = [
    "copy_tree",
    "delete_recursive",
    "file_count",
    "find_by_extension",
    "format_size",
    "max_depth",
    "render_tree",
    "tree_size",
]
