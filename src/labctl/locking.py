"""File-based locks serialising labctl runs that mutate state.

Locks live under the runtime directory: ``labctl.lock`` guards the whole
state file, ``resources/<name>.lock`` guards a single logical resource. Lock
files carry JSON metadata (pid, path, acquisition time) and are left in place
after release for diagnostics; only the ``flock`` is dropped.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "labctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """A held lock and how long it took to acquire."""

    path: Path
    wait_ms: int


@dataclass(frozen=True, slots=True)
class LockBundle:
    """A group of locks acquired together."""

    handles: tuple[LockHandle, ...]
    wait_ms: int


class LockManager:
    """Acquire global and per-resource locks below *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout (seconds)."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def global_lock_path(self) -> Path:
        """Return the path of the global state lock."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    def resource_lock_path(self, name: str) -> Path:
        """Return the lock path for resource *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / "resources" / f"{safe}.lock"

    @contextmanager
    def state_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global state lock."""
        with self._acquire(self.global_lock_path(), timeout) as handle:
            yield handle

    @contextmanager
    def resource_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single logical resource."""
        with self._acquire(self.resource_lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_resources(
        self,
        names: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock (optionally) then per-resource locks in sorted order."""
        start = time.monotonic()
        handles: list[LockHandle] = []
        with ExitStack() as stack:
            if include_global:
                handles.append(stack.enter_context(self.state_lock(timeout=timeout)))
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.resource_lock(name, timeout=timeout)))
            wait_ms = int((time.monotonic() - start) * 1000)
            yield LockBundle(handles=tuple(handles), wait_ms=wait_ms)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            }
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, json.dumps(metadata).encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
