from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import logging
import os
from pathlib import Path
import re
import signal
import subprocess
import time
from typing import Protocol

from devsentinel.applier import apply_patches
from devsentinel.backup import create_backup, discard_backup, new_backup_dir, restore_from_backup
from devsentinel.concurrency import CancellationToken
from devsentinel.config import ValidationConfig
from devsentinel.errors import RestoreError
from devsentinel.models import Patch

LOGGER = logging.getLogger("devsentinel")

NPM_PLACEHOLDER_TEST = "no test specified"
PYTHON_MANIFESTS = ["pyproject.toml", "requirements.txt", "setup.cfg", "tox.ini", "pytest.ini"]
MAKE_TARGET_RE = re.compile(r"^(?P<target>[A-Za-z0-9_.-]+)\s*:(?!=)", re.MULTILINE)
POLL_INTERVAL_SECONDS = 0.1


@dataclass
class ToolingPlan:
    kind: str
    install: str | None = None
    test: str | None = None
    build: str | None = None

    @property
    def has_check(self) -> bool:
        return bool(self.test or self.build)


@dataclass
class CommandResult:
    command: str
    status: str
    exit_code: int | None
    stdout: str
    stderr: str
    error: str | None
    cwd: str

    @property
    def passed(self) -> bool:
        return self.status == "passed"


def _read_text(path: Path) -> str:
    try:
        return path.read_text(errors="ignore")
    except OSError:
        return ""


def _node_plan(root: Path) -> ToolingPlan:
    try:
        manifest = json.loads(_read_text(root / "package.json") or "{}")
    except json.JSONDecodeError as exc:
        LOGGER.warning("Unable to parse package.json: %s", exc)
        manifest = {}
    scripts = manifest.get("scripts") if isinstance(manifest, dict) else None
    scripts = scripts if isinstance(scripts, dict) else {}
    test_script = str(scripts.get("test") or "")
    return ToolingPlan(
        kind="node",
        install="npm install",
        test="npm test" if test_script and NPM_PLACEHOLDER_TEST not in test_script else None,
        build="npm run build" if scripts.get("build") else None,
    )


def _python_plan(root: Path) -> ToolingPlan | None:
    present = [name for name in PYTHON_MANIFESTS if (root / name).exists()]
    if not present:
        return None
    uses_pytest = (root / "pytest.ini").exists() or any("pytest" in _read_text(root / name) for name in present)
    return ToolingPlan(
        kind="python",
        install="python -m pip install -r requirements.txt" if (root / "requirements.txt").exists() else None,
        test="python -m pytest -q" if uses_pytest else None,
    )


def _make_plan(root: Path) -> ToolingPlan:
    targets = {m.group("target") for m in MAKE_TARGET_RE.finditer(_read_text(root / "Makefile"))}
    return ToolingPlan(
        kind="make",
        test="make test" if "test" in targets else None,
        build="make build" if "build" in targets else None,
    )


def _manifest_plan(root: Path) -> ToolingPlan | None:
    if (root / "package.json").exists():
        return _node_plan(root)
    python_plan = _python_plan(root)
    if python_plan is not None:
        return python_plan
    if (root / "go.mod").exists():
        return ToolingPlan(kind="go", install="go mod download", test="go test ./...", build="go build ./...")
    if (root / "Cargo.toml").exists():
        return ToolingPlan(kind="rust", install="cargo fetch", test="cargo test", build="cargo build")
    if (root / "Makefile").exists():
        return _make_plan(root)
    return None


def discover_tooling(root: str | Path, config: ValidationConfig | None = None) -> ToolingPlan | None:
    config = config or ValidationConfig()
    plan = _manifest_plan(Path(root))
    if not config.test_command and not config.build_command:
        return plan
    return ToolingPlan(
        kind=plan.kind if plan else "custom",
        install=plan.install if plan else None,
        test=config.test_command or (plan.test if plan else None),
        build=config.build_command or (plan.build if plan else None),
    )


def _kill(process: subprocess.Popen) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:  # pragma: no cover - windows
            process.kill()
    except (ProcessLookupError, PermissionError):
        process.kill()


def _run_command(
    command: str,
    cwd: Path,
    timeout_seconds: int,
    cancel: CancellationToken | None = None,
) -> CommandResult:
    try:
        process = subprocess.Popen(
            command,
            cwd=str(cwd),
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except OSError as exc:
        return CommandResult(command, "error", None, "", "", str(exc), str(cwd))

    deadline = time.monotonic() + timeout_seconds
    while True:
        try:
            stdout, stderr = process.communicate(timeout=POLL_INTERVAL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            reason = None
            if cancel is not None and cancel.cancelled:
                reason = "cancelled"
            elif time.monotonic() >= deadline:
                reason = f"timeout after {timeout_seconds}s"
            if reason is None:
                continue
            _kill(process)
            stdout, stderr = process.communicate()
            return CommandResult(command, "error", None, stdout or "", stderr or "", reason, str(cwd))

    status = "failed" if process.returncode != 0 else "passed"
    return CommandResult(command, status, process.returncode, stdout, stderr, None, str(cwd))


class Validator(Protocol):
    def validate(self, root: Path) -> bool: ...


class ProjectValidator:
    def __init__(self, config: ValidationConfig | None = None, cancel: CancellationToken | None = None) -> None:
        self.config = config or ValidationConfig()
        self.cancel = cancel
        self.results: list[CommandResult] = []

    def _run(self, command: str, root: Path, timeout_seconds: int) -> CommandResult:
        result = _run_command(command, root, timeout_seconds, self.cancel)
        self.results.append(result)
        return result

    def validate(self, root: Path) -> bool:
        root = Path(root)
        plan = discover_tooling(root, self.config)
        if plan is None or not plan.has_check:
            LOGGER.info("No build or test command found for %s; treating validation as passed", root)
            return True

        if plan.install and self.config.install_dependencies:
            install = self._run(plan.install, root, self.config.install_timeout_seconds)
            if not install.passed:
                LOGGER.warning(
                    "Dependency install '%s' failed (%s); continuing",
                    plan.install,
                    install.error or f"exit {install.exit_code}",
                )

        if plan.test:
            result = self._run(plan.test, root, self.config.test_timeout_seconds)
        else:
            result = self._run(str(plan.build), root, self.config.build_timeout_seconds)
        if result.passed:
            return True
        LOGGER.warning(
            "Validation command '%s' failed (%s)",
            result.command,
            result.error or f"exit {result.exit_code}",
        )
        return False


class ValidationState(str, Enum):
    BACKING_UP = "backing-up"
    APPLYING = "applying"
    VALIDATING = "validating"
    BISECTING = "bisecting"
    COMMITTED = "committed"
    REVERTED = "reverted"
    ABORTED = "aborted"


@dataclass
class RollbackOutcome:
    state: ValidationState
    history: list[ValidationState] = field(default_factory=list)
    patches: list[Patch] = field(default_factory=list)
    discarded: list[Patch] = field(default_factory=list)
    applied: int = 0
    errors: list[str] = field(default_factory=list)
    validation_runs: int = 0


def _restore_or_raise(backup: Path, root: Path) -> None:
    if not restore_from_backup(backup, root):
        raise RestoreError(str(root), str(backup))


class _Transaction:
    def __init__(
        self,
        root: Path,
        validator: Validator | None,
        backup_parent: str | Path | None,
        cancel: CancellationToken | None,
    ) -> None:
        self.root = root
        self.validator = validator
        self.backup_parent = backup_parent
        self.cancel = cancel
        self.outcome = RollbackOutcome(state=ValidationState.BACKING_UP)

    def enter(self, state: ValidationState) -> None:
        self.outcome.state = state
        self.outcome.history.append(state)
        LOGGER.debug("Patch transaction for %s -> %s", self.root, state.value)

    def backup(self) -> Path | None:
        path = new_backup_dir(self.backup_parent)
        if create_backup(self.root, path, self.cancel):
            return path
        discard_backup(path)
        return None

    def validate(self) -> bool:
        if self.validator is None:
            return True
        self.outcome.validation_runs += 1
        try:
            return self.validator.validate(self.root)
        except Exception as exc:
            LOGGER.warning("Validator raised on %s: %s", self.root, exc)
            self.outcome.errors.append(f"validator error: {exc}")
            return False


def apply_with_rollback(
    root: str | Path,
    patches: list[Patch],
    validator: Validator | None,
    backup_parent: str | Path | None = None,
    cancel: CancellationToken | None = None,
) -> RollbackOutcome:
    """Apply patches as a unit; on failed validation keep only the patches that pass one by one."""
    root_path = Path(root)
    tx = _Transaction(root_path, validator, backup_parent, cancel)
    outcome = tx.outcome

    tx.enter(ValidationState.BACKING_UP)
    backup = tx.backup()
    if backup is None:
        outcome.errors.append("backup failed; no patches applied")
        outcome.discarded = list(patches)
        tx.enter(ValidationState.ABORTED)
        return outcome

    # A failed restore raises and leaves the backup on disk for manual recovery.
    tx.enter(ValidationState.APPLYING)
    result = apply_patches(root_path, patches)
    if not result.success:
        outcome.errors.extend(result.errors)
        _restore_or_raise(backup, root_path)
        discard_backup(backup)
        outcome.discarded = list(patches)
        tx.enter(ValidationState.ABORTED)
        return outcome

    tx.enter(ValidationState.VALIDATING)
    if tx.validate():
        discard_backup(backup)
        outcome.patches = list(patches)
        outcome.applied = result.applied
        tx.enter(ValidationState.COMMITTED)
        return outcome

    LOGGER.warning("Validation failed after applying %d patches; bisecting", len(patches))
    _restore_or_raise(backup, root_path)
    discard_backup(backup)

    tx.enter(ValidationState.BISECTING)
    confirmed: list[Patch] = []
    for patch in patches:
        if cancel is not None and cancel.cancelled:
            outcome.discarded.append(patch)
            continue
        step_backup = tx.backup()
        if step_backup is None:
            outcome.errors.append(f"backup failed before trying patch for {patch.file}")
            outcome.discarded.append(patch)
            continue
        step = apply_patches(root_path, [patch])
        if step.success and tx.validate():
            discard_backup(step_backup)
            confirmed.append(patch)
            outcome.applied += step.applied
            continue
        outcome.errors.extend(step.errors)
        if step.success:
            outcome.errors.append(f"patch for {patch.file} failed validation")
        _restore_or_raise(step_backup, root_path)
        discard_backup(step_backup)
        outcome.discarded.append(patch)

    outcome.patches = confirmed
    tx.enter(ValidationState.COMMITTED if confirmed else ValidationState.REVERTED)
    return outcome
