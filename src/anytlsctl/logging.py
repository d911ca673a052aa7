"""Structured operation logging for anytlsctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects the steps a command performed and finishes with exactly one result
(success, warning or error). On exit a single JSON record is appended to
``operations.jsonl`` and a one-line summary is written to ``anytlsctl.log``
through the standard :mod:`logging` machinery.

Logging must never break a deployment: if the log directory cannot be created
or a write fails, the logger disables itself and later operations skip writing.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "anytlsctl.log"

_LOGGER_NAME = "anytlsctl"


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _current_actor() -> str:
    try:
        return getpass.getuser()
    except Exception:  # noqa: BLE001 - getuser raises a variety of errors
        return str(os.getuid()) if hasattr(os, "getuid") else "unknown"


class OperationScope:
    """Mutable record of a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor = _current_actor()
        self.started_at = datetime.now(UTC)
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_monotonic = time.monotonic()

    def add_step(self, name: str, *, status: str, detail: object | None = None) -> None:
        """Record a step performed by the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

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
            warnings=warnings or (message,),
            errors=errors,
            rc=0,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] = (),
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            warnings=warnings,
            errors=errors or (message,),
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
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
            "rc": rc,
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        return {
            "ts": self.started_at.isoformat(),
            "op_id": self.op_id,
            "command": self.command,
            "actor": self.actor,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": self.steps,
            "duration_ms": duration_ms,
            "result": self.result,
        }


class StructuredLogger:
    """Write operation records under *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory; disable logging when it is unusable."""
        self._log_dir = log_dir
        self._operations_log_path = log_dir / OPERATIONS_LOG
        self._human_log_path = log_dir / HUMAN_LOG
        self._enabled = True
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
        self._logger = logging.getLogger(f"{_LOGGER_NAME}.{id(self)}")
        self._logger.propagate = False
        self._logger.setLevel(logging.INFO)

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
        """Run an operation scope and persist its record on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(
                    f"Unhandled {type(exc).__name__}: {exc}",
                    errors=[str(exc) or type(exc).__name__],
                )
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.", changed=0)
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            self._write_human(scope)
        except OSError:
            self._enabled = False

    def _write_human(self, scope: OperationScope) -> None:
        handler = logging.FileHandler(self._human_log_path, encoding="utf-8")
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        )
        self._logger.addHandler(handler)
        try:
            result = scope.result or {}
            status = str(result.get("status", "success"))
            level = {
                "success": logging.INFO,
                "warning": logging.WARNING,
                "error": logging.ERROR,
            }.get(status, logging.INFO)
            self._logger.log(
                level,
                "%s op=%s actor=%s status=%s message=%s",
                scope.command,
                scope.op_id,
                scope.actor,
                status,
                result.get("message", ""),
            )
        finally:
            self._logger.removeHandler(handler)
            handler.close()


__all__ = ["OperationScope", "StructuredLogger"]
