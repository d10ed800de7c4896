"""Structured operation logging for mnodectl.

Every CLI command opens an *operation* and records exactly one result for it.
Results are appended as JSON lines to ``operations.jsonl`` inside the logs
directory, while human-oriented messages emitted through the standard
``logging`` module land in ``mnodectl.log`` next to it.

The logger never breaks a command: when the log directory cannot be created
or a write fails, it disables itself and subsequent operations become no-ops.
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
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

_ROOT_LOGGER = "mnodectl"
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
# Shell convention for a process stopped by SIGINT.
INTERRUPTED_RC = 130


def _json_safe(value: object) -> object:
    """Convert *value* into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


def _as_list(values: Sequence[str] | None) -> list[str]:
    if not values:
        return []
    return [str(value) for value in values]


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the final result for a single operation."""

    logger: StructuredLogger
    op_id: str
    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    started: float = field(default_factory=time.monotonic)
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step of the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=0,
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
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            errors=errors if errors else [message],
            warnings=warnings,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
            "backups": _as_list(backups),
            "context": _json_safe(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON line payload for this operation."""
        duration_ms = int((time.monotonic() - self.started) * 1000)
        return {
            "ts": datetime.now(UTC).isoformat(),
            "op_id": self.op_id,
            "command": self.command,
            "args": _json_safe(dict(self.args)),
            "target": _json_safe(dict(self.target)),
            "actor": {"user": _current_user(), "pid": os.getpid()},
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": duration_ms,
            "steps": list(self.steps),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSONL operations log plus a plain text application log."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging if it cannot be created."""
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / "operations.jsonl"
        self._app_log_path = self.log_dir / "mnodectl.log"
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_file_handler()

    @property
    def enabled(self) -> bool:
        """Return ``True`` while log writes are still attempted."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and persist its result on exit."""
        scope = OperationScope(
            logger=self,
            op_id=uuid.uuid4().hex,
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        try:
            yield scope
        except KeyboardInterrupt:
            if scope.result is None:
                scope.error("Interrupted by operator.", rc=INTERRUPTED_RC)
            raise
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, rc=1)
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

    def _attach_file_handler(self) -> None:
        root = logging.getLogger(_ROOT_LOGGER)
        target = str(self._app_log_path)
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
                return
        try:
            handler = logging.FileHandler(self._app_log_path, encoding="utf-8", delay=True)
        except OSError:  # pragma: no cover - delay=True defers opening
            return
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(logging.INFO)


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid())


__all__ = ["INTERRUPTED_RC", "OperationScope", "StructuredLogger"]
