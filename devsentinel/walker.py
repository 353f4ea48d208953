from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from devsentinel.config import DEFAULT_EXTENSIONS, DEFAULT_IGNORED_DIRS

LOGGER = logging.getLogger("devsentinel")


def _is_inside(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root)
    except (OSError, ValueError):
        return False
    return True


def walk_project(
    root: str | Path,
    extensions: Iterable[str] = DEFAULT_EXTENSIONS,
    ignored_dirs: Iterable[str] = DEFAULT_IGNORED_DIRS,
) -> list[str]:
    """Relative posix paths of source files under root, sorted."""
    root_path = Path(root)
    if not root_path.is_dir():
        LOGGER.warning("Project root %s is not a directory; nothing to walk", root_path)
        return []
    resolved_root = root_path.resolve()
    allowed = {ext.lower() for ext in extensions}
    skipped = set(ignored_dirs)

    files: list[str] = []

    def _on_error(exc: OSError) -> None:
        LOGGER.debug("Unable to list %s: %s", exc.filename, exc)

    for current, dirnames, filenames in os.walk(root_path, onerror=_on_error, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if d not in skipped)
        current_path = Path(current)
        for name in filenames:
            if Path(name).suffix.lower() not in allowed:
                continue
            full = current_path / name
            if full.is_symlink() and not _is_inside(full, resolved_root):
                LOGGER.debug("Skipping symlink %s pointing outside the project", full)
                continue
            files.append(full.relative_to(root_path).as_posix())

    return sorted(files)


def read_source_lines(root: str | Path, rel_path: str, max_file_bytes: int = 1_000_000) -> list[str] | None:
    """Text lines of a project file, or None for binary, oversized or unreadable files."""
    path = Path(root) / rel_path
    try:
        size = path.stat().st_size
        if size > max_file_bytes:
            LOGGER.debug("Skipping %s (size: %d bytes)", rel_path, size)
            return None
        raw = path.read_bytes()
    except OSError as exc:
        LOGGER.debug("Unable to read %s: %s", rel_path, exc)
        return None
    if b"\x00" in raw[:8192]:
        LOGGER.debug("Skipping binary file %s", rel_path)
        return None
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        LOGGER.debug("Skipping non-UTF-8 file %s", rel_path)
        return None
    return [line.rstrip("\r") for line in text.split("\n")]
