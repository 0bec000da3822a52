"""Host-local named locks with bounded waits.

Locks are ``flock(2)`` advisory locks on files under the runtime directory.
The kernel drops a lock when its holder exits, so a crashed process never
leaves a lock held. Acquisition polls until ``timeout`` elapses and then
raises :class:`LockTimeoutError`; waiters are not queued.
"""
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

from .errors import LockTimeoutError

_POLL_INTERVAL = 0.05


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long it took to obtain."""

    name: str
    path: Path
    wait_ms: int


class LockManager:
    """Acquire named locks below *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and the default acquisition timeout."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    def lock_path(self, name: str, *, group: str | None = None) -> Path:
        """Return the lock file path for *name* (optionally inside *group*)."""
        base = self.runtime_dir / group if group else self.runtime_dir
        return base / f"{name}.lock"

    @contextmanager
    def named_lock(
        self,
        name: str,
        *,
        group: str | None = None,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the block."""
        path = self.lock_path(name, group=group)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
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
                yield LockHandle(name=name, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def release_lock(
        self,
        app: str,
        *,
        timeout: float | None = None,
    ) -> AbstractContextManager[LockHandle]:
        """Return a context manager serialising releases of *app* on this host."""
        return self.named_lock(app, group="apps", timeout=timeout)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
