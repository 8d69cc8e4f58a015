"""Advisory file locks serialising mutations of a cluster's storage.

Two concurrent ``create-storage`` runs against the same cluster would race on
the "lookup then create" check and could create duplicate resources. Commands
that mutate cloud state therefore hold an exclusive lock on
``<runtime_dir>/<platform>-<cluster>.lock`` for their whole run (``fcntl`` on
POSIX, ``msvcrt`` on Windows). The lock file is left behind after release; its
JSON body identifies the last holder.
"""
from __future__ import annotations

import json
import os
import sys
import time
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

_POLL_INTERVAL = 0.05

if sys.platform == "win32":
    import msvcrt

    def _try_lock(handle: IO[str]) -> None:
        """Lock the first byte of *handle*, raising ``BlockingIOError`` when held."""
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc

    def _unlock(handle: IO[str]) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _try_lock(handle: IO[str]) -> None:
        """Take an exclusive lock on *handle*, raising ``BlockingIOError`` when held."""
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock(handle: IO[str]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float, holder: str | None = None) -> None:
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {path}{detail}.")
        self.path = path
        self.timeout = timeout
        self.holder = holder


@dataclass(slots=True)
class LockHandle:
    """An acquired lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired in a fixed order."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire named exclusive locks below *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-").replace(os.sep, "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def resource_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the block."""
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        handle = path.open("a+", encoding="utf-8")
        try:
            wait_ms = self._acquire(handle, path, limit)
            self._write_metadata(handle, path)
            yield LockHandle(path=path, wait_ms=wait_ms)
        finally:
            try:
                _unlock(handle)
            finally:
                handle.close()

    @contextmanager
    def mutate_resources(
        self,
        names: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire each named lock in sorted order."""
        with ExitStack() as stack:
            handles: list[LockHandle] = []
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.resource_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    def _acquire(self, handle: IO[str], path: Path, timeout: float) -> int:
        start = time.monotonic()
        while True:
            try:
                _try_lock(handle)
                return int((time.monotonic() - start) * 1000)
            except BlockingIOError:
                if time.monotonic() - start >= timeout:
                    raise LockTimeoutError(path, timeout, _read_holder(path)) from None
                time.sleep(_POLL_INTERVAL)

    @staticmethod
    def _write_metadata(handle: IO[str], path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps(payload))
        handle.flush()


def _read_holder(path: Path) -> str | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    pid = data.get("pid") if isinstance(data, dict) else None
    return f"pid {pid}" if pid is not None else None


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
