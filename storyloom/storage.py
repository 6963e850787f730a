"""JSON file storage.

All records live in flat JSON files under a configurable base directory.
There is no database or ORM; reads and writes go through plain helper
methods that load and dump JSON. Every write lands in a temp file first and
is moved into place with os.replace, so a reader sees either the old record
or the new one, never half of each.

Directory layout:

    {base}/
      executions/
        {id}.json               ← NarrativeExecution
        {id}/
          acts/{seq}.json       ← ActExecution, ActInputs embedded (write-once)
          processors.json       ← list of ProcessorRun
      tasks/
        {task_id}.json          ← TaskState
      state/
        {scope}.json            ← {key: value} for one state scope
      tables/
        {table}.json            ← list of row dicts

Filesystem and decode failures surface as PersistenceError.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from storyloom.errors import InputNotFoundError, PersistenceError
from storyloom.models import (
    ActExecution,
    NarrativeExecution,
    ProcessorRun,
    TaskState,
)

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.\-]+$")


def _check_name(kind: str, name: str) -> str:
    if not _SAFE_NAME.match(name) or name in (".", ".."):
        raise PersistenceError(f"Invalid {kind} name: {name!r}")
    return name


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._exec_root = self._base / "executions"
        self._task_root = self._base / "tasks"
        self._state_root = self._base / "state"
        self._table_root = self._base / "tables"
        try:
            for d in (self._exec_root, self._task_root, self._state_root, self._table_root):
                d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot initialise storage at {self._base}: {e}") from e

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        self._write_text(path, json.dumps(data, indent=2, default=str))

    def _write_text(self, path: Path, text: str) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text)
            os.replace(tmp, path)
        except OSError as e:
            raise PersistenceError(f"Cannot write {path}: {e}") from e

    def _exec_file(self, execution_id: str) -> Path:
        return self._exec_root / f"{_check_name('execution', execution_id)}.json"

    def _exec_dir(self, execution_id: str) -> Path:
        return self._exec_root / _check_name("execution", execution_id)

    def _task_file(self, task_id: str) -> Path:
        return self._task_root / f"{_check_name('task', task_id)}.json"

    def _state_file(self, scope: str) -> Path:
        return self._state_root / f"{_check_name('scope', scope)}.json"

    def _table_file(self, table: str) -> Path:
        return self._table_root / f"{_check_name('table', table)}.json"

    # ------------------------------------------------------------------
    # Narrative executions
    # ------------------------------------------------------------------

    def save_execution(self, execution: NarrativeExecution) -> None:
        """Create or update an execution record.

        Terminal records are never rewritten.
        """
        path = self._exec_file(execution.id)
        if path.exists():
            current = self.get_execution(execution.id)
            if current is not None and current.status.terminal:
                raise PersistenceError(
                    f"Execution {execution.id} is already {current.status.value}"
                )
        self._write_text(path, execution.model_dump_json(indent=2))

    def get_execution(self, execution_id: str) -> NarrativeExecution | None:
        path = self._exec_file(execution_id)
        if not path.exists():
            return None
        try:
            return NarrativeExecution.model_validate(self._read_json(path))
        except ValidationError as e:
            raise PersistenceError(f"Corrupt execution record {execution_id}: {e}") from e

    def list_executions(self, task_id: str | None = None) -> list[NarrativeExecution]:
        out = []
        for path in sorted(self._exec_root.glob("*.json")):
            execution = NarrativeExecution.model_validate(self._read_json(path))
            if task_id is None or execution.task_id == task_id:
                out.append(execution)
        out.sort(key=lambda e: e.started_at)
        return out

    # ------------------------------------------------------------------
    # Act executions (write-once)
    # ------------------------------------------------------------------

    def save_act(self, act: ActExecution) -> None:
        """Persist an act together with its inputs in a single write."""
        path = self._exec_dir(act.execution_id) / "acts" / f"{act.sequence:04d}.json"
        if path.exists():
            raise PersistenceError(
                f"Act {act.sequence} of execution {act.execution_id} already recorded"
            )
        self._write_text(path, act.model_dump_json(indent=2))

    def get_acts(self, execution_id: str) -> list[ActExecution]:
        acts_dir = self._exec_dir(execution_id) / "acts"
        if not acts_dir.is_dir():
            return []
        return [
            ActExecution.model_validate(self._read_json(p))
            for p in sorted(acts_dir.glob("*.json"))
        ]

    # ------------------------------------------------------------------
    # Processor runs
    # ------------------------------------------------------------------

    def append_processor_run(self, run: ProcessorRun) -> None:
        path = self._exec_dir(run.execution_id) / "processors.json"
        runs = self.get_processor_runs(run.execution_id)
        runs.append(run)
        self._write_json(path, [r.model_dump(mode="json") for r in runs])

    def get_processor_runs(self, execution_id: str) -> list[ProcessorRun]:
        path = self._exec_dir(execution_id) / "processors.json"
        if not path.exists():
            return []
        return [ProcessorRun.model_validate(r) for r in self._read_json(path)]

    # ------------------------------------------------------------------
    # Task state
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskState | None:
        path = self._task_file(task_id)
        if not path.exists():
            return None
        return TaskState.model_validate(self._read_json(path))

    def save_task(self, task: TaskState) -> None:
        self._write_text(self._task_file(task.task_id), task.model_dump_json(indent=2))

    def list_tasks(self) -> list[TaskState]:
        return [
            TaskState.model_validate(self._read_json(p))
            for p in sorted(self._task_root.glob("*.json"))
        ]

    def update_task(
        self, task_id: str, fn: Callable[[TaskState], TaskState | None]
    ) -> TaskState | None:
        """Read-modify-write one task record.

        `fn` receives the current state and returns the new state, or None to
        leave the record untouched. Returns whatever was written (None when
        nothing was). Runs without awaiting, so no other coroutine on the
        event loop can interleave between the read and the write.
        """
        current = self.get_task(task_id)
        if current is None:
            return None
        updated = fn(current.model_copy(deep=True))
        if updated is None:
            return None
        self.save_task(updated)
        return updated

    # ------------------------------------------------------------------
    # State scopes
    # ------------------------------------------------------------------

    def get_scope(self, scope: str) -> dict[str, Any]:
        path = self._state_file(scope)
        if not path.exists():
            return {}
        return self._read_json(path)

    def put_scope(self, scope: str, entries: dict[str, Any]) -> None:
        self._write_json(self._state_file(scope), entries)

    def delete_scope(self, scope: str) -> None:
        path = self._state_file(scope)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot delete {path}: {e}") from e

    # ------------------------------------------------------------------
    # Content tables
    # ------------------------------------------------------------------

    def table_exists(self, table: str) -> bool:
        return self._table_file(table).exists()

    def query(
        self, table: str, filter: dict[str, Any] | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Rows whose fields equal every filter value, in insertion order."""
        path = self._table_file(table)
        if not path.exists():
            raise InputNotFoundError(f"Table not found: {table!r}")
        rows = self._read_json(path)
        if filter:
            rows = [r for r in rows if all(r.get(k) == v for k, v in filter.items())]
        if limit is not None:
            rows = rows[:limit]
        return rows

    def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> None:
        path = self._table_file(table)
        existing = self._read_json(path) if path.exists() else []
        existing.extend(rows)
        self._write_json(path, existing)
        logger.debug("insert table=%s rows=%d total=%d", table, len(rows), len(existing))
