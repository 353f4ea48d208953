from __future__ import annotations

from enum import Enum
import logging
import os
from pathlib import Path
from typing import Iterable

from devsentinel.models import ApplyResult, Patch, PatchOutcome

LOGGER = logging.getLogger("devsentinel")


class TargetState(str, Enum):
    MISSING = "missing"
    FILE = "file"
    NOT_A_FILE = "not-a-file"


def target_state(path: Path) -> TargetState:
    if path.is_file():
        return TargetState.FILE
    if path.exists() or path.is_symlink():
        return TargetState.NOT_A_FILE
    return TargetState.MISSING


def resolve_inside(root: Path, rel_path: str) -> Path | None:
    """Absolute target for rel_path, or None when it would escape root."""
    if os.path.isabs(rel_path):
        return None
    relative = os.path.relpath(os.path.normpath(os.path.join(str(root), rel_path)), str(root))
    if relative == "." or relative == ".." or relative.startswith(".." + os.sep) or os.path.isabs(relative):
        return None
    target = root / relative
    try:
        target.resolve().relative_to(root.resolve())
    except (OSError, ValueError):
        return None
    return target


def _error(outcomes: list[PatchOutcome], errors: list[str], file: str, message: str) -> None:
    errors.append(message)
    outcomes.append(PatchOutcome(file=file, status="error", error=message))


def _updated_content(content: str, patch: Patch) -> str | None:
    if patch.mode == "prepend":
        newline = "\r\n" if "\r\n" in content else "\n"
        return f"{patch.after}{newline}{content}"
    if patch.replaces_whole_file:
        return patch.after
    before = patch.before or ""
    if before in content:
        return content.replace(before, patch.after or "", 1)
    trimmed = before.strip()
    if trimmed and trimmed in content:
        return content.replace(trimmed, patch.after or "", 1)
    return None


def apply_patches(project_root: str | Path, patches: Iterable[Patch]) -> ApplyResult:
    root = Path(project_root)
    errors: list[str] = []
    outcomes: list[PatchOutcome] = []
    applied = 0

    if not str(project_root) or not root.is_dir():
        errors.append(f"Invalid project path: {project_root}")
        return ApplyResult(success=False, applied=0, errors=errors, outcomes=outcomes)

    for patch in patches:
        if not patch.file or not patch.after:
            _error(outcomes, errors, patch.file, "Invalid patch: missing file or after content")
            continue

        target = resolve_inside(root, patch.file)
        if target is None:
            _error(outcomes, errors, patch.file, f"Invalid file path (path traversal prevented): {patch.file}")
            continue

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _error(outcomes, errors, patch.file, f"Failed to create directory for {patch.file}: {exc}")
            continue

        state = target_state(target)
        if state is TargetState.NOT_A_FILE:
            _error(outcomes, errors, patch.file, f"Target is not a regular file: {patch.file}")
            continue

        if state is TargetState.MISSING:
            try:
                target.write_bytes(patch.after.encode("utf-8"))
            except OSError as exc:
                _error(outcomes, errors, patch.file, f"Failed to create file {patch.file}: {exc}")
                continue
            applied += 1
            outcomes.append(PatchOutcome(file=patch.file, status="created"))
            LOGGER.debug("Created %s from patch", patch.file)
            continue

        try:
            content = target.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            _error(outcomes, errors, patch.file, f"Failed to read file {patch.file}: {exc}")
            continue

        updated = _updated_content(content, patch)
        if updated is None:
            _error(outcomes, errors, patch.file, f"Could not find before content in file {patch.file}")
            continue

        try:
            target.write_bytes(updated.encode("utf-8"))
        except OSError as exc:
            _error(outcomes, errors, patch.file, f"Failed to write file {patch.file}: {exc}")
            continue
        applied += 1
        outcomes.append(PatchOutcome(file=patch.file, status="applied"))
        LOGGER.debug("Applied patch to %s: %s", patch.file, patch.change)

    return ApplyResult(success=not errors, applied=applied, errors=errors, outcomes=outcomes)
