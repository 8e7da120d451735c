"""Advisory file locks serialising registry mutations.

Two kinds of lock exist:

* the registry lock (``registry.lock``) guarding every read-modify-write of
  the port registry;
* per-instance locks (``<name>.lock``) held while an instance is created.

Bundles always acquire the registry lock first and instance locks in sorted
order, so concurrent invocations cannot deadlock. Lock files carry JSON
metadata (pid, acquisition time) and persist after release for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .errors import ClawctlError

REGISTRY_LOCK_NAME = "registry"
POLL_INTERVAL = 0.05


class LockTimeoutError(ClawctlError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long acquiring it took."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Several held locks acquired in a fixed order."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


@dataclass(slots=True)
class LockManager:
    """Create and acquire lock files under *lock_dir*."""

    lock_dir: Path
    default_timeout: float = 30.0

    def registry_lock(self, *, timeout: float | None = None) -> _LockContext:
        """Return a context manager holding the registry lock."""
        return self._lock(self.lock_dir / f"{REGISTRY_LOCK_NAME}.lock", timeout)

    def instance_lock(self, name: str, *, timeout: float | None = None) -> _LockContext:
        """Return a context manager holding the lock for instance *name*."""
        safe = name.replace("/", "-")
        return self._lock(self.lock_dir / "instances" / f"{safe}.lock", timeout)

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Hold the registry lock followed by each instance lock."""
        bundle = LockBundle()
        with ExitStack() as stack:
            bundle.handles.append(stack.enter_context(self.registry_lock(timeout=timeout)))
            for name in sorted(set(names)):
                bundle.handles.append(
                    stack.enter_context(self.instance_lock(name, timeout=timeout))
                )
            yield bundle

    def _lock(self, path: Path, timeout: float | None) -> _LockContext:
        return _LockContext(path, self.default_timeout if timeout is None else timeout)


class _LockContext:
    """Context manager performing the ``flock`` acquisition loop."""

    def __init__(self, path: Path, timeout: float) -> None:
        self._path = path
        self._timeout = timeout
        self._fd: int | None = None

    def __enter__(self) -> LockHandle:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        deadline = started + self._timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out after {self._timeout:g}s waiting for lock {self._path}."
                    ) from None
                time.sleep(POLL_INTERVAL)
        self._fd = fd
        wait_ms = int((time.monotonic() - started) * 1000)
        self._write_metadata(fd)
        return LockHandle(path=self._path, wait_ms=wait_ms)

    def __exit__(self, *exc_info: object) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def _write_metadata(self, fd: int) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(self._path),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        data = json.dumps(payload).encode("utf-8")
        os.ftruncate(fd, 0)
        os.pwrite(fd, data, 0)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
