"""Structured operation logging for harmonyctl.

Each CLI command runs inside :meth:`StructuredLogger.operation`, which emits a
single JSON line to ``operations.jsonl`` when the command finishes. The record
captures arguments, the cluster target, ordered workflow steps, lock wait time
and the final result. Logging never fails a command: if the log directory
cannot be created or written, the logger disables itself and carries on.
"""
from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> object:
    """Return a JSON-safe version of *value*."""
    if isinstance(value, Enum):
        return _sanitize(value.value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Mutable record for a single in-flight operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None
    _start: float = field(default_factory=time.monotonic)

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Append a workflow step to the record."""
        entry: dict[str, object] = {"name": name, "status": status}
        if detail:
            entry["detail"] = detail
        self.steps.append(entry)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its lock."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        resources: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as succeeded."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            warnings=warnings,
            errors=(),
            resources=resources,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        resources: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings (exit code stays 0)."""
        self._set_result(
            "warning",
            message,
            rc=0,
            changed=changed,
            warnings=warnings or (message,),
            errors=errors,
            resources=resources,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            changed=0,
            warnings=(),
            errors=list(errors) if errors else [message],
            resources=(),
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int,
        warnings: Sequence[str],
        errors: Sequence[str],
        resources: Sequence[str],
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
            "resources": list(resources),
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON-safe log record for this operation."""
        duration_ms = int((time.monotonic() - self._start) * 1000)
        return {
            "op_id": self.op_id,
            "command": self.command,
            "pid": os.getpid(),
            "started_at": self.started_at,
            "finished_at": datetime.now(UTC).isoformat(),
            "duration_ms": duration_ms,
            "args": _sanitize(dict(self.args)),
            "target": _sanitize(dict(self.target)) if self.target else None,
            "lock_wait_ms": self.lock_wait_ms,
            "steps": list(self.steps),
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to a JSON-lines file."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Track *command* and write its record when the block exits."""
        scope = OperationScope(command=command, args=dict(args or {}), target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                rc = _exit_code_of(exc)
                if rc == 0:
                    scope.success("Completed.")
                else:
                    scope.error(f"{type(exc).__name__}: {exc}".rstrip(": "), rc=rc)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


def _exit_code_of(exc: BaseException) -> int:
    code = getattr(exc, "exit_code", None)
    if isinstance(code, int):
        return code
    return 1


__all__ = ["OperationScope", "StructuredLogger", "OPERATIONS_LOG_NAME"]
