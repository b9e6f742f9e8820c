"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from nodefleet.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger._operations_log_path  # type: ignore[attr-defined]
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_operation_record_includes_steps_and_lock_wait(tmp_path: Path) -> None:
    """A completed operation writes one JSON line with its steps."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "uploaders provision",
        args={"count": 3, "path": Path("/srv")},
        target={"kind": "host", "name": "alpha"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("binary.ensure", status="installed", detail="/usr/local/bin/autonomi")
        op.add_step("systemd.daemon-reload", status="success")
        op.success("done", changed=4)

    (record,) = _records(logger)
    assert record["command"] == "uploaders provision"
    assert record["args"] == {"count": 3, "path": "/srv"}
    assert record["target"] == {"kind": "host", "name": "alpha"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [
        {"name": "binary.ensure", "status": "installed", "detail": "/usr/local/bin/autonomi"},
        {"name": "systemd.daemon-reload", "status": "success"},
    ]
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["changed"] == 4  # type: ignore[index]


def test_operation_without_result_defaults_to_success(tmp_path: Path) -> None:
    """Leaving the block without an explicit result records success."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("config show"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_operation_records_error_and_reraises(tmp_path: Path) -> None:
    """Unhandled exceptions are recorded as errors and propagate."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="bad input"):
        with logger.operation("nodes upgrade"):
            raise ValueError("bad input")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["errors"] == ["bad input"]  # type: ignore[index]


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
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

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

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("demo") as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["note"]  # type: ignore[index]
    assert result["errors"] == ["err"]  # type: ignore[index]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}  # type: ignore[index]


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided and carry rc."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo") as op:
        op.error("boom", errors=None, rc=4, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["errors"] == ["boom"]  # type: ignore[index]
    assert result["rc"] == 4  # type: ignore[index]
    assert result["context"] == {"value": "{1, 2}"}  # type: ignore[index]
