"""Loading and saving the declarative task list."""
from __future__ import annotations

import json
import math
import random
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .config import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY_MS
from .models import Task
from .store import write_json_atomic

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class TaskSourceError(RuntimeError):
    """Raised when the task file itself cannot be read as a task list."""


class TaskDefinitionError(ValueError):
    """Raised when a new task definition is rejected."""


@dataclass(slots=True)
class TaskSource:
    """Raw task entries plus the shape they were read in.

    ``wrapper`` is ``None`` for a bare JSON array; otherwise it holds the
    enclosing object so that saving keeps its other keys.
    """

    entries: list[Any]
    wrapper: Optional[dict[str, Any]] = field(default_factory=dict)


def slugify(value: str) -> str:
    return _SLUG_INVALID.sub("-", str(value).lower()).strip("-")


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or value is None or value == "":
        return default
    if isinstance(value, float):
        if not math.isfinite(value):
            return default
        value = int(value)
    # Leading digits count, so "30s" reads as 30.
    match = _LEADING_INT.match(str(value))
    if match is None:
        return default
    number = int(match.group(1))
    return number if number > 0 else default


def _trimmed(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _working_directory(value: Any) -> str:
    raw = _trimmed(value)
    if not raw:
        return ""
    return str(Path(raw).expanduser().resolve())


def read_task_source(path: Path, *, missing_ok: bool = False) -> TaskSource:
    """Read the task file without interpreting individual entries."""

    if not path.exists():
        if missing_ok:
            return TaskSource(entries=[])
        raise TaskSourceError(f"Tasks file not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TaskSourceError(f"Failed to parse JSON at {path}: {exc}") from exc

    if isinstance(raw, list):
        return TaskSource(entries=raw, wrapper=None)
    if isinstance(raw, dict):
        entries = raw.get("tasks")
        return TaskSource(entries=entries if isinstance(entries, list) else [], wrapper=raw)
    raise TaskSourceError(f"Tasks file {path} must contain a JSON array or object")


def parse_task(entry: Any, index: int, used_ids: set[str], rng: random.Random) -> Optional[Task]:
    """Normalize one raw entry, or return ``None`` if it cannot become a task."""

    if not isinstance(entry, dict):
        return None

    name = _trimmed(entry.get("name"))
    prompt = _trimmed(entry.get("prompt"))
    working_directory = _working_directory(entry.get("workingDirectory"))
    if not name or not prompt or not working_directory:
        return None

    raw_id = entry.get("id")
    task_id = slugify(raw_id) if isinstance(raw_id, str) else ""
    if not task_id:
        task_id = slugify(name) or f"task-{index + 1}"
    while task_id in used_ids:
        task_id = f"{task_id}-{rng.randrange(1000)}"
    used_ids.add(task_id)

    tools = entry.get("allowedTools")
    allowed_tools = tuple(
        tool for tool in tools if isinstance(tool, str) and tool.strip()
    ) if isinstance(tools, list) else ()

    success_regex = entry.get("successRegex")
    return Task(
        id=task_id,
        name=name,
        prompt=prompt,
        working_directory=working_directory,
        enabled=entry.get("enabled") is not False,
        model=_trimmed(entry.get("model")),
        system_prompt=_trimmed(entry.get("systemPrompt")),
        allowed_tools=allowed_tools,
        dangerously_skip_permissions=entry.get("dangerouslySkipPermissions") is True,
        max_attempts=_positive_int(entry.get("maxAttempts"), DEFAULT_MAX_ATTEMPTS),
        retry_delay_ms=_positive_int(entry.get("retryDelayMs"), DEFAULT_RETRY_DELAY_MS),
        run_timeout_ms=_positive_int(entry.get("runTimeoutMs"), 0),
        repeat_delay_ms=_positive_int(entry.get("repeatDelayMs"), 0),
        success_regex=success_regex if isinstance(success_regex, str) else "",
    )


def load_tasks(path: Path, rng: Optional[random.Random] = None) -> list[Task]:
    """Load the registry from ``path``.

    Entries without a name, a prompt or a working directory are skipped.
    Duplicate ids get a random numeric suffix drawn from ``rng``.

    Raises:
        TaskSourceError: When the file is missing or is not a JSON task list.
    """

    rng = rng or random.Random()
    source = read_task_source(path)
    used_ids: set[str] = set()
    tasks: list[Task] = []
    for index, entry in enumerate(source.entries):
        task = parse_task(entry, index, used_ids, rng)
        if task is not None:
            tasks.append(task)
    return tasks


def save_tasks(path: Path, source: TaskSource) -> None:
    """Write the entries back in the shape they were read, pretty-printed."""

    entries = [entry.to_dict() if isinstance(entry, Task) else entry for entry in source.entries]
    if source.wrapper is None:
        payload: Any = entries
    else:
        payload = {**source.wrapper, "tasks": entries}
    write_json_atomic(path, payload)


def build_task_entry(
    *,
    name: str,
    prompt: str,
    working_directory: Path,
    existing: list[Any],
    task_id: Optional[str] = None,
    enabled: bool = True,
    model: str = "",
    system_prompt: str = "",
    allowed_tools: tuple[str, ...] = (),
    dangerously_skip_permissions: bool = False,
    max_attempts: Optional[int] = None,
    retry_delay_ms: Optional[int] = None,
    run_timeout_ms: Optional[int] = None,
    repeat_delay_ms: Optional[int] = None,
    success_regex: str = "",
) -> Task:
    """Validate a new task definition against the entries already declared."""

    name = name.strip()
    prompt = prompt.strip()
    if not name:
        raise TaskDefinitionError("Task name is required")
    if not prompt:
        raise TaskDefinitionError("Task prompt is required")

    directory = working_directory.expanduser().resolve()
    if not directory.exists():
        raise TaskDefinitionError(f"Working directory does not exist: {directory}")
    if not directory.is_dir():
        raise TaskDefinitionError(f"Working directory is not a directory: {directory}")

    new_id = slugify(task_id or name) or f"task-{len(existing) + 1}"
    if any(isinstance(entry, dict) and str(entry.get("id")) == new_id for entry in existing):
        raise TaskDefinitionError(f"Task id already exists: {new_id}")

    return Task(
        id=new_id,
        name=name,
        prompt=prompt,
        working_directory=str(directory),
        enabled=enabled,
        model=model.strip(),
        system_prompt=system_prompt.strip(),
        allowed_tools=tuple(tool.strip() for tool in allowed_tools if tool.strip()),
        dangerously_skip_permissions=dangerously_skip_permissions,
        max_attempts=_positive_int(max_attempts, DEFAULT_MAX_ATTEMPTS),
        retry_delay_ms=_positive_int(retry_delay_ms, DEFAULT_RETRY_DELAY_MS),
        run_timeout_ms=_positive_int(run_timeout_ms, 0),
        repeat_delay_ms=_positive_int(repeat_delay_ms, 0),
        success_regex=success_regex,
    )


__all__ = [
    "TaskDefinitionError",
    "TaskSource",
    "TaskSourceError",
    "build_task_entry",
    "load_tasks",
    "parse_task",
    "read_task_source",
    "save_tasks",
    "slugify",
]
