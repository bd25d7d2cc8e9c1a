"""Scheduler loop picking eligible tasks and applying the retry policy."""
from __future__ import annotations

import random
import signal
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from .config import DEFAULT_AGENT_BIN, DEFAULT_POLL_MS
from .models import (
    TERMINAL_SENTINEL,
    RunRecord,
    RunResult,
    StateDocument,
    Task,
    TaskRuntime,
    TaskStatus,
)
from .registry import load_tasks
from .runner import run_task
from .store import StateStore, append_run, ensure_runtime, now_ms, reconcile_state

console = Console()

Runner = Callable[..., RunResult]


def format_time(ms: Optional[int]) -> str:
    if not ms:
        return "-"
    if ms >= TERMINAL_SENTINEL:
        return "never"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def is_eligible(task: Task, runtime: TaskRuntime, now: int) -> bool:
    if not task.enabled:
        return False
    if runtime.next_eligible_at and runtime.next_eligible_at > now:
        return False
    if runtime.status == TaskStatus.PENDING:
        return True
    if runtime.status == TaskStatus.ERROR:
        return runtime.attempts < task.max_attempts
    return False


class Orchestrator:
    """Runs at most one task attempt per tick and persists the outcome."""

    def __init__(
        self,
        tasks_path: Path,
        store: StateStore,
        logs_dir: Path,
        *,
        agent_bin: str = DEFAULT_AGENT_BIN,
        poll_ms: int = DEFAULT_POLL_MS,
        runner: Runner = run_task,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.tasks_path = tasks_path
        self.store = store
        self.logs_dir = logs_dir
        self.agent_bin = agent_bin
        self.poll_ms = poll_ms
        self.runner = runner
        self.rng = rng or random.Random()
        self._stop_event = threading.Event()

    def load(self) -> tuple[list[Task], StateDocument]:
        tasks = load_tasks(self.tasks_path, self.rng)
        document = reconcile_state(self.store.load(), tasks)
        return tasks, document

    def status(self) -> tuple[list[Task], StateDocument]:
        """Registry and reconciled state as they would be seen by the next tick.

        Nothing is written.
        """

        return self.load()

    def tick(self) -> bool:
        """Reload everything, run the first eligible task if there is one.

        Returns whether an attempt was made.
        """

        tasks, document = self.load()
        self.store.save(document)
        return self.run_next(tasks, document)

    def run_next(self, tasks: list[Task], document: StateDocument) -> bool:
        now = now_ms()
        task = next(
            (task for task in tasks if is_eligible(task, ensure_runtime(document, task.id), now)),
            None,
        )
        if task is None:
            return False

        runtime = ensure_runtime(document, task.id)
        runtime.attempts += 1
        runtime.status = TaskStatus.RUNNING
        runtime.last_run_started_at = now_ms()
        runtime.last_run_ended_at = None
        runtime.last_duration_ms = None
        runtime.last_error = None
        runtime.last_exit_code = None
        runtime.last_run_id = f"{task.id}-{runtime.attempts}-{runtime.last_run_started_at}"
        self.store.save(document)

        console.print(
            f"[blue]Running task '{task.name}' ({task.id}), "
            f"attempt {runtime.attempts}/{task.max_attempts}.[/blue]"
        )
        result = self.runner(task, runtime.attempts, self.logs_dir, agent_bin=self.agent_bin)
        self._apply_result(task, runtime, result, now_ms())

        append_run(
            document,
            RunRecord(
                run_id=runtime.last_run_id,
                task_id=task.id,
                task_name=task.name,
                status=runtime.status,
                attempt=runtime.attempts,
                started_at=runtime.last_run_started_at,
                ended_at=runtime.last_run_ended_at,
                duration_ms=runtime.last_duration_ms,
                exit_code=runtime.last_exit_code,
                error=runtime.last_error,
                log_file=runtime.last_log_file,
            ),
        )
        self.store.save(document)
        return True

    def _apply_result(self, task: Task, runtime: TaskRuntime, result: RunResult, ended_at: int) -> None:
        runtime.last_run_ended_at = ended_at
        runtime.last_duration_ms = result.duration_ms
        runtime.last_exit_code = result.exit_code
        runtime.last_log_file = result.log_file

        if result.ok:
            runtime.last_error = None
            if task.repeat_delay_ms > 0:
                runtime.status = TaskStatus.PENDING
                runtime.next_eligible_at = ended_at + task.repeat_delay_ms
                console.print(
                    f"[green]Task '{task.name}' succeeded; next run at "
                    f"{format_time(runtime.next_eligible_at)}.[/green]"
                )
            else:
                runtime.status = TaskStatus.SUCCESS
                runtime.next_eligible_at = TERMINAL_SENTINEL
                console.print(f"[green]Task '{task.name}' succeeded.[/green]")
            return

        runtime.status = TaskStatus.ERROR
        runtime.last_error = result.error or "Unknown error"
        if runtime.attempts < task.max_attempts:
            runtime.next_eligible_at = ended_at + task.retry_delay_ms
            console.print(
                f"[red]Task '{task.name}' failed: {runtime.last_error}[/red] "
                f"[yellow](retry at {format_time(runtime.next_eligible_at)})[/yellow]"
            )
        else:
            runtime.next_eligible_at = TERMINAL_SENTINEL
            console.print(
                f"[red]Task '{task.name}' failed: {runtime.last_error} (no retries left)[/red]"
            )

    def run_forever(self) -> None:
        console.print("[bold green]Starting task orchestrator...[/bold green]")
        previous = self._install_signal_handlers()
        try:
            while not self._stop_event.is_set():
                if not self.tick():
                    self._stop_event.wait(self.poll_ms / 1000)
        finally:
            for signum, handler in previous.items():
                if handler is not None:
                    signal.signal(signum, handler)
            console.print("[bold yellow]Orchestrator stopped.[/bold yellow]")

    def stop(self) -> None:
        self._stop_event.set()

    def _install_signal_handlers(self) -> dict:
        previous = {}
        try:
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous[signum] = signal.signal(signum, self._handle_signal)
        except ValueError:
            # Only the main thread may install handlers.
            pass
        return previous

    def _handle_signal(self, signum, frame) -> None:  # type: ignore[override]
        console.print(f"[yellow]Received signal {signum}, stopping after the current task...[/yellow]")
        self.stop()


def run_scheduler_loop(
    tasks_path: Path,
    state_path: Path,
    logs_dir: Path,
    *,
    agent_bin: str = DEFAULT_AGENT_BIN,
    poll_ms: int = DEFAULT_POLL_MS,
) -> None:
    orchestrator = Orchestrator(
        tasks_path, StateStore(state_path), logs_dir, agent_bin=agent_bin, poll_ms=poll_ms
    )
    orchestrator.run_forever()


__all__ = ["Orchestrator", "format_time", "is_eligible", "run_scheduler_loop"]
