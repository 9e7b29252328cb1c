"""Advisory file locks serialising mutating avanodectl commands."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "avanodectl"
BINARY_LOCK_NAME = "binary"
SNAPSHOTS_LOCK_NAME = "snapshots"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and how long the caller waited for it."""

    path: Path
    wait_ms: int
    fd: int = field(repr=False)


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together, in order."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total wait across every handle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire ``flock`` based locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lock file used for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def named_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the block."""
        path = self.lock_path(name)
        handle = self._acquire(path, self.default_timeout if timeout is None else timeout)
        try:
            yield handle
        finally:
            self._release(handle)

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the host-wide avanodectl lock."""
        with self.named_lock(GLOBAL_LOCK_NAME, timeout=timeout) as handle:
            yield handle

    @contextmanager
    def mutate_node(
        self,
        extra: Sequence[str] = (),
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by any *extra* named locks."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(extra)):
                handles.append(stack.enter_context(self.named_lock(name, timeout=timeout)))
            yield LockBundle(handles)

    # ------------------------------------------------------------------
    def _acquire(self, path: Path, timeout: float) -> LockHandle:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        deadline = started + max(timeout, 0.0)
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for lock {path}."
                    ) from None
                time.sleep(_POLL_INTERVAL)
        wait_ms = int((time.monotonic() - started) * 1000)
        metadata = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(metadata, sort_keys=True).encode("utf-8"))
        os.fsync(fd)
        return LockHandle(path=path, wait_ms=wait_ms, fd=fd)

    @staticmethod
    def _release(handle: LockHandle) -> None:
        try:
            fcntl.flock(handle.fd, fcntl.LOCK_UN)
        finally:
            os.close(handle.fd)


__all__ = [
    "BINARY_LOCK_NAME",
    "GLOBAL_LOCK_NAME",
    "SNAPSHOTS_LOCK_NAME",
    "LockBundle",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
]
