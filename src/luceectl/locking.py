"""Advisory file locks serialising luceectl invocations.

Locks live under ``<home>/run``. Commands that mutate an instance take the
global ``luceectl.lock`` first and then one lock per instance name, always in
sorted order, so two concurrent ``start`` calls cannot both scan the same free
port or build the same instance directory.
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

GLOBAL_LOCK_NAME = "luceectl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock; ``wait_ms`` is the time spent waiting for it."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the accumulated wait time across the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Create and acquire lock files under a runtime directory."""

    def __init__(self, run_dir: Path, default_timeout: float = 30.0) -> None:
        """Remember the lock directory and the default timeout in seconds."""
        self.run_dir = Path(run_dir).expanduser()
        self.default_timeout = default_timeout

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide luceectl lock."""
        with self._acquire(self.run_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for the instance called *name*."""
        with self._acquire(self.run_dir / f"{_safe_name(name)}.lock", timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Hold the global lock followed by each instance lock."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    # Internal helpers -------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from exc
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = json.dumps({"pid": os.getpid(), "path": str(path)})
            os.ftruncate(fd, 0)
            os.pwrite(fd, metadata.encode("utf-8"), 0)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _safe_name(name: str) -> str:
    cleaned = name.strip().replace(os.sep, "_")
    if not cleaned:
        raise ValueError("Lock name must be a non-empty string.")
    return cleaned


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
