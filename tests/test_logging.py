"""Tests for the structured logging subsystem."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from mnodectl.logging import INTERRUPTED_RC, StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger._operations_log_path  # type: ignore[attr-defined]
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_operation_writes_json_line_with_steps(tmp_path: Path) -> None:
    """Operations persist args, target, steps, lock wait and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "install",
        args={"cert": Path("/tmp/cert.pem")},
        target={"kind": "node", "name": "node1"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("ports.allocate", detail="62050/62051")
        op.add_step("confirm", status="skipped")
        op.success("Node installed.", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "install"
    assert record["args"] == {"cert": "/tmp/cert.pem"}
    assert record["target"] == {"kind": "node", "name": "node1"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [
        {"name": "ports.allocate", "status": "success", "detail": "62050/62051"},
        {"name": "confirm", "status": "skipped"},
    ]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 1
    assert result["rc"] == 0


def test_operation_defaults_to_success(tmp_path: Path) -> None:
    """Scopes closed without a result are recorded as successful."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("list"):
        pass

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"


def test_operation_records_error_on_exception(tmp_path: Path) -> None:
    """Unhandled exceptions are recorded as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("edit"):
            raise RuntimeError("backend exploded")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["errors"] == ["backend exploded"]
    assert result["rc"] == 1


def test_operation_records_interrupt_as_error(tmp_path: Path) -> None:
    """Ctrl-C during an operation is logged as an interrupted failure."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(KeyboardInterrupt):
        with logger.operation("install") as op:
            op.add_step("ports.allocate", detail="62050/62051")
            raise KeyboardInterrupt

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == INTERRUPTED_RC
    assert result["errors"] == ["Interrupted by operator."]


def test_operation_records_system_exit_as_error(tmp_path: Path) -> None:
    """Other base exceptions never default to success."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(SystemExit):
        with logger.operation("logs"):
            raise SystemExit(2)

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == 1


def test_operation_keeps_explicit_result_on_exception(tmp_path: Path) -> None:
    """A result recorded before the exception is not overwritten."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("uninstall") as op:
            op.error("teardown failed", errors=["rm failed"])
            raise RuntimeError("exit")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["message"] == "teardown failed"
    assert result["errors"] == ["rm failed"]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger.enabled is False

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("demo", args={"path": Path("foo")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            backups=["backup.tar"],
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "warning"
    assert result["warnings"] == ["note"]
    assert result["errors"] == ["err"]
    assert result["backups"] == ["backup.tar"]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}


def test_application_log_handler_attached_once(tmp_path: Path) -> None:
    """Repeated loggers for one directory share a single file handler."""
    StructuredLogger(tmp_path / "logs")
    StructuredLogger(tmp_path / "logs")

    target = str(tmp_path / "logs" / "mnodectl.log")
    handlers = [
        handler
        for handler in logging.getLogger("mnodectl").handlers
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target
    ]
    assert len(handlers) == 1
