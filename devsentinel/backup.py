from __future__ import annotations

import logging
import os
from pathlib import Path
import shutil
import tempfile

from devsentinel.concurrency import CancellationToken

LOGGER = logging.getLogger("devsentinel")

BACKUP_EXCLUDED_DIRS = ("node_modules", ".git", "dist", "build", ".next")


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
    except ValueError:
        return False
    return True


def _ignore_excluded(directory: str, names: list[str]) -> set[str]:
    return {name for name in names if name in BACKUP_EXCLUDED_DIRS and os.path.isdir(os.path.join(directory, name))}


def new_backup_dir(parent: str | Path | None = None) -> Path:
    return Path(tempfile.mkdtemp(prefix="devsentinel-backup-", dir=str(parent) if parent else None))


def discard_backup(path: str | Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


def create_backup(project: str | Path, backup: str | Path, cancel: CancellationToken | None = None) -> bool:
    project_path = Path(project).resolve()
    backup_path = Path(backup).resolve()
    if not project_path.is_dir():
        LOGGER.error("Failed to create backup: %s is not a directory", project_path)
        return False
    if _is_within(backup_path, project_path):
        LOGGER.error("Refusing to create backup %s inside the project %s", backup_path, project_path)
        return False
    try:
        shutil.copytree(
            project_path,
            backup_path,
            symlinks=True,
            ignore=_ignore_excluded,
            dirs_exist_ok=True,
        )
    except (OSError, shutil.Error) as exc:
        LOGGER.error("Failed to create backup of %s: %s", project_path, exc)
        discard_backup(backup_path)
        return False
    if cancel is not None and cancel.cancelled:
        LOGGER.info("Backup of %s cancelled; discarding partial copy", project_path)
        discard_backup(backup_path)
        return False
    return True


def _clear_project(directory: Path) -> None:
    # Excluded directories are skipped at every depth, matching what create_backup copies.
    for entry in directory.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            if entry.name in BACKUP_EXCLUDED_DIRS:
                continue
            _clear_project(entry)
            if not any(entry.iterdir()):
                entry.rmdir()
        else:
            entry.unlink()


def restore_from_backup(backup: str | Path, project: str | Path) -> bool:
    """Replace the project tree with the backup; excluded directories in the project are left alone."""
    backup_path = Path(backup).resolve()
    project_path = Path(project).resolve()
    if not backup_path.is_dir():
        LOGGER.error("Failed to restore: backup %s does not exist", backup_path)
        return False
    try:
        project_path.mkdir(parents=True, exist_ok=True)
        _clear_project(project_path)
        shutil.copytree(backup_path, project_path, symlinks=True, dirs_exist_ok=True)
    except (OSError, shutil.Error) as exc:
        LOGGER.error("Failed to restore %s from backup %s: %s", project_path, backup_path, exc)
        return False
    return True
