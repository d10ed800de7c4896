"""Advisory file locks guarding registry and node mutations.

Mutating commands take the global ``mnodectl.lock`` first and then one lock
per affected node under ``nodes/``, always in sorted order, so concurrent
invocations never deadlock against each other. Lock files persist after
release so operators can inspect which process last held them.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

GLOBAL_LOCK_NAME = "mnodectl"
NODE_LOCK_DIR = "nodes"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float) -> None:
        """Record the contended lock *path* and the *timeout* that elapsed."""
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {path}.")
        self.path = path
        self.timeout = timeout


@dataclass(slots=True)
class LockHandle:
    """A held lock and the time spent waiting for it."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total wait time across all handles."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Hand out file locks rooted at *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Configure the lock directory and the default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = float(default_timeout)

    def global_lock_path(self) -> Path:
        """Return the path of the global mutation lock."""
        return self.runtime_dir / f"{GLOBAL_LOCK_NAME}.lock"

    def node_lock_path(self, name: str) -> Path:
        """Return the path of the lock guarding node *name*."""
        return self.runtime_dir / NODE_LOCK_DIR / f"{name}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global mutation lock."""
        with self._acquire(self.global_lock_path(), timeout) as handle:
            yield handle

    @contextmanager
    def node_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single node."""
        with self._acquire(self.node_lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_nodes(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by each node lock in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.node_lock(name, timeout=timeout)))
            yield LockBundle(handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(path, limit) from None
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
    payload = json.dumps({"pid": os.getpid(), "path": str(path), "acquired": time.time()})
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, payload.encode("utf-8"))
    os.fsync(fd)


__all__ = [
    "GLOBAL_LOCK_NAME",
    "NODE_LOCK_DIR",
    "LockBundle",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
]
