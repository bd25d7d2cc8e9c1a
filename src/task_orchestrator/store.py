"""JSON persistence for task runtime state and run history."""
from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Iterable, Optional

from .models import RunRecord, StateDocument, Task, TaskRuntime, TaskStatus

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 500
RESTART_MESSAGE = "orchestrator restarted while this task was running"


def now_ms() -> int:
    return int(time.time() * 1000)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write ``payload`` to a sibling temporary file and rename it over ``path``.

    Readers only ever see the previous document or the new one. If writing or
    renaming fails the temporary file is removed and the error propagates.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


class StateStore:
    """Loads and saves the state document kept at ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> StateDocument:
        """Return the persisted document, or a fresh one if it is missing or unreadable."""

        if not self.path.exists():
            return StateDocument()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("State file %s is unreadable (%s); starting fresh", self.path, exc)
            return StateDocument()
        if not isinstance(raw, dict):
            logger.warning("State file %s is not a JSON object; starting fresh", self.path)
            return StateDocument()
        return self._document_from_raw(raw)

    def save(self, document: StateDocument) -> None:
        write_json_atomic(self.path, document.to_dict())

    @staticmethod
    def _document_from_raw(raw: dict[str, Any]) -> StateDocument:
        version = raw.get("version")
        raw_tasks = raw.get("tasks")
        raw_runs = raw.get("runs")

        tasks: dict[str, TaskRuntime] = {}
        if isinstance(raw_tasks, dict):
            for task_id, entry in raw_tasks.items():
                if isinstance(entry, dict):
                    tasks[str(task_id)] = TaskRuntime.from_dict(entry)

        runs: list[RunRecord] = []
        if isinstance(raw_runs, list):
            runs = [RunRecord.from_dict(entry) for entry in raw_runs if isinstance(entry, dict)]

        return StateDocument(
            version=version if isinstance(version, int) and not isinstance(version, bool) else 1,
            tasks=tasks,
            runs=runs[-HISTORY_LIMIT:],
        )


def ensure_runtime(document: StateDocument, task_id: str) -> TaskRuntime:
    runtime = document.tasks.get(task_id)
    if runtime is None:
        runtime = TaskRuntime()
        document.tasks[task_id] = runtime
    return runtime


def reconcile_state(
    document: StateDocument, tasks: Iterable[Task], now: Optional[int] = None
) -> StateDocument:
    """Align ``document`` with the current registry.

    Every task gets a runtime entry, runtimes left ``running`` by a previous
    process become retryable errors, and entries for tasks that disappeared
    are dropped. Applying it twice gives the same result as applying it once.
    """

    now = now_ms() if now is None else now
    valid_ids = set()
    for task in tasks:
        valid_ids.add(task.id)
        runtime = ensure_runtime(document, task.id)
        if runtime.status == TaskStatus.RUNNING:
            logger.warning("Task %s was left running by a previous process", task.id)
            runtime.status = TaskStatus.ERROR
            runtime.last_error = RESTART_MESSAGE
            runtime.next_eligible_at = now
            runtime.last_run_ended_at = now

    for task_id in list(document.tasks):
        if task_id not in valid_ids:
            del document.tasks[task_id]
    return document


def append_run(document: StateDocument, record: RunRecord) -> None:
    """Append ``record`` and drop the oldest entries beyond ``HISTORY_LIMIT``."""

    document.runs.append(record)
    overflow = len(document.runs) - HISTORY_LIMIT
    if overflow > 0:
        del document.runs[:overflow]


__all__ = [
    "HISTORY_LIMIT",
    "RESTART_MESSAGE",
    "StateStore",
    "append_run",
    "ensure_runtime",
    "now_ms",
    "reconcile_state",
    "write_json_atomic",
]
