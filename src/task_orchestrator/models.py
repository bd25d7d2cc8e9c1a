"""Dataclasses describing tasks, their runtime state and run history."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional

# Largest integer a JSON consumer can represent exactly; marks "never again".
TERMINAL_SENTINEL = 2**53 - 1


class TaskStatus:
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

    ALL = (PENDING, RUNNING, SUCCESS, ERROR)


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


@dataclass(slots=True, frozen=True)
class Task:
    """A declared unit of work run through the agent executable."""

    id: str
    name: str
    prompt: str
    working_directory: str
    enabled: bool = True
    model: str = ""
    system_prompt: str = ""
    allowed_tools: tuple[str, ...] = ()
    dangerously_skip_permissions: bool = False
    max_attempts: int = 3
    retry_delay_ms: int = 30_000
    run_timeout_ms: int = 0
    repeat_delay_ms: int = 0
    success_regex: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "prompt": self.prompt,
            "workingDirectory": self.working_directory,
            "enabled": self.enabled,
            "model": self.model,
            "systemPrompt": self.system_prompt,
            "allowedTools": list(self.allowed_tools),
            "dangerouslySkipPermissions": self.dangerously_skip_permissions,
            "maxAttempts": self.max_attempts,
            "retryDelayMs": self.retry_delay_ms,
            "runTimeoutMs": self.run_timeout_ms,
            "repeatDelayMs": self.repeat_delay_ms,
            "successRegex": self.success_regex,
        }


@dataclass(slots=True)
class TaskRuntime:
    """Mutable execution state persisted per task id."""

    status: str = TaskStatus.PENDING
    attempts: int = 0
    last_run_started_at: Optional[int] = None
    last_run_ended_at: Optional[int] = None
    last_duration_ms: Optional[int] = None
    last_exit_code: Optional[int] = None
    last_error: Optional[str] = None
    last_run_id: Optional[str] = None
    last_log_file: Optional[str] = None
    next_eligible_at: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRuntime":
        status = data.get("status")
        return cls(
            status=status if status in TaskStatus.ALL else TaskStatus.PENDING,
            attempts=max(_optional_int(data.get("attempts")) or 0, 0),
            last_run_started_at=_optional_int(data.get("lastRunStartedAt")),
            last_run_ended_at=_optional_int(data.get("lastRunEndedAt")),
            last_duration_ms=_optional_int(data.get("lastDurationMs")),
            last_exit_code=_optional_int(data.get("lastExitCode")),
            last_error=_optional_str(data.get("lastError")),
            last_run_id=_optional_str(data.get("lastRunId")),
            last_log_file=_optional_str(data.get("lastLogFile")),
            next_eligible_at=_optional_int(data.get("nextEligibleAt")) or 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "attempts": self.attempts,
            "lastRunStartedAt": self.last_run_started_at,
            "lastRunEndedAt": self.last_run_ended_at,
            "lastDurationMs": self.last_duration_ms,
            "lastExitCode": self.last_exit_code,
            "lastError": self.last_error,
            "lastRunId": self.last_run_id,
            "lastLogFile": self.last_log_file,
            "nextEligibleAt": self.next_eligible_at,
        }


@dataclass(slots=True, frozen=True)
class RunRecord:
    """One completed attempt, as kept in the run history."""

    run_id: Optional[str]
    task_id: str
    task_name: str
    status: str
    attempt: int
    started_at: Optional[int]
    ended_at: Optional[int]
    duration_ms: Optional[int]
    exit_code: Optional[int]
    error: Optional[str]
    log_file: Optional[str]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunRecord":
        return cls(
            run_id=_optional_str(data.get("runId")),
            task_id=str(data.get("taskId", "")),
            task_name=str(data.get("taskName", "")),
            status=str(data.get("status", "")),
            attempt=_optional_int(data.get("attempt")) or 0,
            started_at=_optional_int(data.get("startedAt")),
            ended_at=_optional_int(data.get("endedAt")),
            duration_ms=_optional_int(data.get("durationMs")),
            exit_code=_optional_int(data.get("exitCode")),
            error=_optional_str(data.get("error")),
            log_file=_optional_str(data.get("logFile")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "taskId": self.task_id,
            "taskName": self.task_name,
            "status": self.status,
            "attempt": self.attempt,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "durationMs": self.duration_ms,
            "exitCode": self.exit_code,
            "error": self.error,
            "logFile": self.log_file,
        }


@dataclass(slots=True)
class StateDocument:
    """The persisted ``{version, tasks, runs}`` document."""

    version: int = 1
    tasks: dict[str, TaskRuntime] = field(default_factory=dict)
    runs: list[RunRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "tasks": {task_id: runtime.to_dict() for task_id, runtime in self.tasks.items()},
            "runs": [run.to_dict() for run in self.runs],
        }


@dataclass(slots=True, frozen=True)
class RunResult:
    """Outcome of a single attempt reported by the process runner."""

    ok: bool
    error: Optional[str]
    exit_code: Optional[int]
    duration_ms: int
    log_file: Optional[str]


__all__ = [
    "RunRecord",
    "RunResult",
    "StateDocument",
    "TERMINAL_SENTINEL",
    "Task",
    "TaskRuntime",
    "TaskStatus",
]
