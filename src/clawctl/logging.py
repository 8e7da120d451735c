"""Structured operation logging for clawctl.

Every command runs inside :meth:`StructuredLogger.operation`, which appends a
single JSON document to ``<logs_dir>/operations.jsonl`` when the scope ends.
The record captures the command, its arguments and target, the ordered steps
performed, lock wait time and the final result.

Logging must never break a command: if the log directory cannot be created
or a write fails, the logger disables itself and later operations become
no-ops.
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
from pathlib import Path
from typing import Any

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> Any:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record of one command execution."""

    op_id: str
    command: str
    args: dict[str, Any]
    target: dict[str, Any]
    started_at: str
    steps: list[dict[str, Any]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, Any] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a completed step."""
        step: dict[str, Any] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=(),
            rc=0,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            rc=0,
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
            changed=0,
            warnings=(),
            errors=errors if errors else (message,),
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str],
        errors: Sequence[str],
        rc: int,
        context: Mapping[str, object] | None,
    ) -> None:
        result: dict[str, Any] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
            "rc": rc,
        }
        if context:
            result["context"] = _sanitize(context)
        self.result = result


class StructuredLogger:
    """Append-only JSONL operations log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging if that fails."""
        self._logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are still being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Track *command* and persist its record when the scope exits."""
        scope = OperationScope(
            op_id=uuid.uuid4().hex,
            command=command,
            args=_sanitize(dict(args or {})),
            target=_sanitize(dict(target or {})),
            started_at=datetime.now(UTC).isoformat(),
        )
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                rc = getattr(exc, "exit_code", 1)
                scope.error(str(exc) or type(exc).__name__, rc=rc if isinstance(rc, int) else 1)
            raise
        finally:
            if scope.result is None:
                scope.error("Operation ended without a recorded result.")
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write(scope, duration_ms)

    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        if not self._enabled:
            return
        record = {
            "id": scope.op_id,
            "pid": os.getpid(),
            "command": scope.command,
            "args": scope.args,
            "target": scope.target,
            "started_at": scope.started_at,
            "duration_ms": duration_ms,
            "lock_wait_ms": scope.lock_wait_ms,
            "steps": scope.steps,
            "result": scope.result,
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
