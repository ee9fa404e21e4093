"""Advisory file locks used to serialise realmctl mutations.

Locks live under the runtime directory. The global lock (``realmctl.lock``)
is always taken before per-realm locks so two commands can never deadlock on
each other. Each lock file records the holder's PID for diagnostics and is
left in place after release.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import ExternalResourceError

GLOBAL_LOCK_NAME = "realmctl"
ID_LOCK_NAME = "realm-ids"
_POLL_INTERVAL = 0.05
_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


class LockTimeoutError(ExternalResourceError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A group of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global, per-realm and ID-allocation locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{_SAFE_NAME.sub('_', name)}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global realmctl lock."""
        with self._acquire(self.lock_path(GLOBAL_LOCK_NAME), timeout) as handle:
            yield handle

    @contextmanager
    def realm_lock(self, full_name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single realm."""
        with self._acquire(self.lock_path(full_name), timeout) as handle:
            yield handle

    @contextmanager
    def id_allocation(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the fleet-wide realm ID allocation lock."""
        with self._acquire(self.lock_path(ID_LOCK_NAME), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_realms(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by each realm lock in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.realm_lock(name, timeout=timeout)))
            yield LockBundle(handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(UTC).isoformat(),
            }
            os.ftruncate(fd, 0)
            os.pwrite(fd, json.dumps(metadata).encode("utf-8"), 0)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
