"""Structured operation logging for prosodyfix commands.

Each CLI operation appends a single JSON object to ``operations.jsonl`` in the
configured logs directory. Records capture the command, its arguments and
target, the individual steps performed and a final result. Logging is best
effort: if the directory cannot be created or a write fails the logger
disables itself rather than interrupting the command.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    """Return *value* converted into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


class OperationScope:
    """Collect steps and the outcome of a single operation."""

    def __init__(self, logger: StructuredLogger, record: dict[str, object]) -> None:
        """Bind the scope to *logger* and the partially built *record*."""
        self._logger = logger
        self._record = record
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None
        self._started = time.monotonic()

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _utc_now()}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        self._steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            rc=0,
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
            changed=None,
            warnings=warnings,
            errors=errors if errors else [message],
            rc=rc,
            context=context,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        rc: int,
        context: Mapping[str, object] | None,
    ) -> None:
        self._result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "rc": rc,
            "context": _json_safe(dict(context or {})),
        }

    def _finalise(self, exc: BaseException | None) -> dict[str, object]:
        if self._result is None:
            if exc is None:
                self.success("Completed.")
            else:
                self.error(f"{type(exc).__name__}: {exc}")
        record = dict(self._record)
        record["steps"] = self._steps
        record["result"] = self._result
        record["duration_ms"] = int((time.monotonic() - self._started) * 1000)
        return record


class StructuredLogger:
    """Append JSON operation records under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the logs directory, disabling the logger on failure."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Structured logging disabled: %s", exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON lines file."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope that is written out when the block exits."""
        record: dict[str, object] = {
            "op_id": uuid.uuid4().hex,
            "ts": _utc_now(),
            "command": command,
            "args": _json_safe(dict(args or {})),
            "target": _json_safe(dict(target or {})),
        }
        scope = OperationScope(self, record)
        try:
            yield scope
        except BaseException as exc:
            self._write(scope._finalise(exc))
            raise
        self._write(scope._finalise(None))

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.debug("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
