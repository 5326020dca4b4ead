"""Tests for the structured operations log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from nexusctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    return [json.loads(line) for line in logger.path.read_text(encoding="utf-8").splitlines()]


def test_operation_writes_json_record(tmp_path: Path) -> None:
    """Each operation appends one JSON line with steps and result."""
    logger = StructuredLogger(tmp_path / "ops")

    with logger.operation("restart", args={"target": "all"}, target={"kind": "instance"}) as op:
        op.add_step("instance.restart.1", status="success")
        op.add_step("instance.restart.2", status="error", detail="timed out")
        op.warning("Restarted 1 of 2 instances.", errors=["timed out"], changed=1)

    (record,) = _records(logger)
    assert record["command"] == "restart"
    assert record["args"] == {"target": "all"}
    assert record["steps"] == [
        {"name": "instance.restart.1", "status": "success"},
        {"name": "instance.restart.2", "status": "error", "detail": "timed out"},
    ]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "warning"
    assert result["errors"] == ["timed out"]
    assert result["changed"] == 1


def test_operation_records_escaping_exception(tmp_path: Path) -> None:
    """An exception leaving the scope without a result is logged as an error."""
    logger = StructuredLogger(tmp_path / "ops")

    with pytest.raises(ValueError):
        with logger.operation("start"):
            raise ValueError("bad node id")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["message"] == "ValueError: bad node id"


def test_paths_and_tuples_are_sanitised(tmp_path: Path) -> None:
    """Non-JSON values in args and context are converted to JSON types."""
    logger = StructuredLogger(tmp_path / "ops")

    with logger.operation("logs", args={"path": tmp_path, "ids": (1, 2)}) as op:
        op.success("done", context={"where": tmp_path / "x.log"})

    (record,) = _records(logger)
    assert record["args"] == {"path": str(tmp_path), "ids": [1, 2]}
    result = record["result"]
    assert isinstance(result, dict)
    assert result["context"] == {"where": str(tmp_path / "x.log")}


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

    with logger.operation("list", args={"json": True}) as op:
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
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("stop-all") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("stop-all") as op:
        op.success("done", changed=0)
