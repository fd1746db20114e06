"""Structured operation logging for devbao commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The yielded
:class:`OperationScope` collects the steps taken, the time spent waiting on
locks and the final outcome, and appends one JSON line per command to
``operations.log`` under the configured logs directory. A human readable
summary is mirrored to the standard :mod:`logging` hierarchy under the
``devbao`` logger.

The logger never breaks a command: if the directory cannot be created or a
write fails, it disables itself and the command carries on.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger("devbao")

OPERATIONS_LOG_NAME = "operations.log"


@dataclass(slots=True)
class OperationStep:
    """One recorded step within an operation."""

    name: str
    status: str
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


@dataclass(slots=True)
class OperationScope:
    """Mutable record of a single command invocation."""

    logger: StructuredLogger
    command: str
    args: dict[str, object]
    target: dict[str, object]
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started: float = field(default_factory=time.monotonic)
    steps: list[OperationStep] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a step such as ``node.unseal`` with its outcome."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail))
        LOGGER.debug("%s: step %s (%s)%s", self.command, name, status, f": {detail}" if detail else "")

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited on advisory locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 1,
    ) -> None:
        """Mark the operation as failed; *errors* defaults to ``[message]``."""
        self._finish(
            "error",
            message,
            changed=0,
            warnings=None,
            errors=list(errors) if errors else [message],
            context=context,
            rc=rc,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        context: Mapping[str, object] | None,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "context": _sanitise(dict(context or {})),
            "rc": rc,
        }

    def to_dict(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "operation_id": self.operation_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "steps": [step.to_dict() for step in self.steps],
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": int((time.monotonic() - self.started) * 1000),
            "pid": os.getpid(),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSON operation log."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation logging disabled; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Location of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a command inside a recorded operation scope."""
        scope = OperationScope(
            logger=self,
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            if scope.result is None:
                scope.warning("Operation ended without reporting a result.")
            self._emit(scope)

    def _emit(self, scope: OperationScope) -> None:
        result = scope.result or {}
        level = logging.ERROR if result.get("status") == "error" else logging.INFO
        LOGGER.log(level, "%s: %s", scope.command, result.get("message", ""))

        if not self._enabled:
            return
        record = json.dumps(scope.to_dict(), sort_keys=True)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(record + "\n")
        except OSError as exc:
            LOGGER.warning(
                "Operation logging disabled; cannot write %s: %s",
                self._operations_log_path,
                exc,
            )
            self._enabled = False


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


__all__ = ["OperationScope", "OperationStep", "StructuredLogger"]
