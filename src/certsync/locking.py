"""Advisory lock files serialising certsync runs."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "certsync"
_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock file cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is not acquired before the timeout expires."""


@dataclass(frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire ``flock`` based locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Initialise with the lock directory and default wait in seconds."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    def sync_lock(self, timeout: float | None = None) -> AbstractContextManager[LockHandle]:
        """Hold the lock guarding destination files for a whole run."""
        return self.acquire(GLOBAL_LOCK_NAME, timeout=timeout)

    @contextmanager
    def acquire(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock *name*, waiting at most *timeout* seconds."""
        path = self.lock_path(name)
        limit = self.default_timeout if timeout is None else timeout
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Failed to open lock file {path}: {exc}") from exc

        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:g}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
