"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from prosodyfix.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    text = logger.operations_log_path.read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines() if line]


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
    operations_path = logger.operations_log_path

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_operation_records_steps_and_result(tmp_path: Path) -> None:
    """Steps and the final result land in a single JSON line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("render", args={"out": Path("/tmp/out")}, target={"kind": "dir"}) as op:
        op.add_step("file.write", detail=Path("/tmp/out/prosody.cfg.lua"))
        op.success("Rendered.", changed=1, context={"vhosts": ("localhost",)})

    (record,) = _records(logger)
    assert record["command"] == "render"
    assert record["args"] == {"out": "/tmp/out"}
    assert record["steps"][0]["detail"] == "/tmp/out/prosody.cfg.lua"
    assert record["result"]["status"] == "success"
    assert record["result"]["changed"] == 1
    assert record["result"]["context"] == {"vhosts": ["localhost"]}


def test_operation_scope_success_sanitises_context(tmp_path: Path) -> None:
    """Warnings and context values are recorded in JSON-safe form."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("demo") as op:
        op.success(
            "done",
            warnings=("note",),
            changed=1,
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "success"
    assert result["warnings"] == ["note"]
    assert result["errors"] == []
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo") as op:
        op.error("boom", errors=None, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["context"] == {"value": "{1, 2}"}


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the block becomes an error record."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="kaput"):
        with logger.operation("demo"):
            raise RuntimeError("kaput")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert record["result"]["message"] == "RuntimeError: kaput"
