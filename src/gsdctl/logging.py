"""Structured operation logging for gsdctl commands.

Each CLI command opens an :class:`OperationScope` through
:meth:`StructuredLogger.operation`. When the scope closes a single JSON record
is appended to ``operations.jsonl`` and a one-line summary is written to the
human-readable ``gsdctl.log`` through the standard :mod:`logging` module.

The logger never breaks a command: if the log directory cannot be created or
written it disables itself and later operations become no-ops.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import secrets
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from . import __version__

HUMAN_LOG_NAME = "gsdctl.log"
OPERATIONS_LOG_NAME = "operations.jsonl"

_HUMAN_LOGGER_NAME = "gsdctl.operations"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[str]:
    if values is None:
        return []
    return [str(value) for value in values]


class OperationScope:
    """Collects steps and the final result of one command invocation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* for *command*."""
        self._logger = logger
        self.command = command
        self.op_id = f"{datetime.now(tz=UTC).strftime('%Y%m%dT%H%M%S')}-{secrets.token_hex(4)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor: dict[str, object] = {"user": _current_user(), "pid": os.getpid()}
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _now_iso()
        self._start = time.perf_counter()

    def __enter__(self) -> OperationScope:
        """Return the scope itself."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Finalise and persist the record; exceptions always propagate."""
        if self.result is None:
            if exc is not None and not _is_exit(exc):
                self._set_result("error", f"Unhandled error: {exc}", errors=[str(exc)], rc=1)
            else:
                self._set_result("success", "Operation completed.")
        self._logger._emit(self)

    # Result helpers ------------------------------------------------
    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: str | None = None,
        **extra: object,
    ) -> None:
        """Record a named step within the operation."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = detail
        for key, value in extra.items():
            step[key] = _sanitize(value)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        rc: int = 1,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=errors if errors is not None else [message],
            warnings=warnings,
            rc=rc,
            backups=backups,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        errors: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        backups: Iterable[object] | None = None,
        rc: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "errors": _as_list(errors),
            "warnings": _as_list(warnings),
            "backups": _as_list(backups),
            "rc": rc,
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record persisted for this operation."""
        return {
            "op_id": self.op_id,
            "ts": self._started_at,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": _sanitize(self.actor),
            "steps": list(self.steps),
            "result": self.result or {},
            "context": {"gsdctl_version": __version__},
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
        }


class StructuredLogger:
    """Write operation records to JSONL plus a human-readable log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging if it cannot be created."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
        self._human = logging.getLogger(f"{_HUMAN_LOGGER_NAME}.{id(self)}")
        self._human.propagate = False
        self._human.setLevel(logging.INFO)

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Open a new operation scope for *command*."""
        return OperationScope(self, command, args=args, target=target)

    def _emit(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
            self._write_human(record)
        except OSError:
            self._enabled = False

    def _write_human(self, record: Mapping[str, object]) -> None:
        result = record.get("result")
        status = result.get("status", "unknown") if isinstance(result, Mapping) else "unknown"
        message = result.get("message", "") if isinstance(result, Mapping) else ""
        handler = logging.FileHandler(self._human_log_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        self._human.addHandler(handler)
        try:
            level = logging.ERROR if status == "error" else logging.INFO
            if status == "warning":
                level = logging.WARNING
            self._human.log(
                level,
                "%s [%s] %s (op=%s)",
                record.get("command"),
                status,
                message,
                record.get("op_id"),
            )
        finally:
            self._human.removeHandler(handler)
            handler.close()


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on environment
        return "unknown"


def _is_exit(exc: BaseException) -> bool:
    """Return True for clean CLI exits (``typer.Exit`` / ``SystemExit`` with rc 0)."""
    code = getattr(exc, "exit_code", getattr(exc, "code", None))
    return code in (0, None)


__all__ = ["OperationScope", "StructuredLogger"]
