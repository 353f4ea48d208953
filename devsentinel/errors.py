from __future__ import annotations


class DevSentinelError(Exception):
    pass


class RestoreError(DevSentinelError, RuntimeError):
    """Restoring a backup failed; the project tree is left in a known-bad state."""

    def __init__(self, project: str, backup: str, reason: str = "") -> None:
        self.project = project
        self.backup = backup
        message = f"failed to restore {project} from backup {backup}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ScanCancelled(DevSentinelError):
    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"scan cancelled before stage '{stage}'")


class LLMError(DevSentinelError):
    pass
