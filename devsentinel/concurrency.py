from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import os
from pathlib import Path
import threading
from typing import AsyncIterator

from devsentinel.errors import ScanCancelled


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise ScanCancelled(stage)


class _RootLock:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


# Entries live only while some run holds or waits for the root.
_LOCKS: dict[str, _RootLock] = {}
_LOCKS_GUARD = threading.Lock()


def _checkout(key: str) -> _RootLock:
    with _LOCKS_GUARD:
        entry = _LOCKS.get(key)
        if entry is None:
            entry = _LOCKS[key] = _RootLock()
        entry.users += 1
        return entry


def _checkin(key: str, entry: _RootLock) -> None:
    with _LOCKS_GUARD:
        entry.users -= 1
        if entry.users == 0:
            _LOCKS.pop(key, None)


@asynccontextmanager
async def async_project_lock(root: str | Path, poll_seconds: float = 0.05) -> AsyncIterator[None]:
    """Serialize every mutating pass over one project root; polls so the event loop is never blocked."""
    key = os.path.realpath(str(root))
    entry = _checkout(key)
    try:
        while not entry.lock.acquire(blocking=False):
            await asyncio.sleep(poll_seconds)
        try:
            yield
        finally:
            entry.lock.release()
    finally:
        _checkin(key, entry)


def is_locked(root: str | Path) -> bool:
    with _LOCKS_GUARD:
        entry = _LOCKS.get(os.path.realpath(str(root)))
    return entry is not None and entry.lock.locked()
