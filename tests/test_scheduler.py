from __future__ import annotations

import json
import random
import time
from pathlib import Path

from task_orchestrator.models import TERMINAL_SENTINEL, RunResult, TaskStatus
from task_orchestrator.scheduler_service import Orchestrator, is_eligible
from task_orchestrator.store import HISTORY_LIMIT, RESTART_MESSAGE, StateStore


class FakeRunner:
    """Returns queued results instead of spawning processes.

    It also records the persisted document seen while each attempt runs.
    """

    def __init__(self, store: StateStore, results: list[RunResult]) -> None:
        self.store = store
        self.results = list(results)
        self.calls: list[tuple[str, int]] = []
        self.snapshots = []

    def __call__(self, task, attempt, logs_dir, *, agent_bin):
        self.calls.append((task.id, attempt))
        self.snapshots.append(self.store.load())
        return self.results.pop(0)


def ok(log_file: str = "log.jsonl") -> RunResult:
    return RunResult(ok=True, error=None, exit_code=0, duration_ms=5, log_file=log_file)


def failed(error: str = "boom") -> RunResult:
    return RunResult(ok=False, error=error, exit_code=1, duration_ms=5, log_file="log.jsonl")


def write_tasks(tmp_path: Path, *tasks: dict) -> Path:
    entries = [
        {"name": "Task", "prompt": "do it", "workingDirectory": str(tmp_path), **task} for task in tasks
    ]
    path = tmp_path / "tasks.json"
    path.write_text(json.dumps({"tasks": entries}), encoding="utf-8")
    return path


def make_orchestrator(tmp_path: Path, tasks_path: Path, results: list[RunResult]):
    store = StateStore(tmp_path / "state.json")
    fake = FakeRunner(store, results)
    orchestrator = Orchestrator(
        tasks_path, store, tmp_path / "logs", runner=fake, rng=random.Random(0), poll_ms=1
    )
    return orchestrator, fake, store


def test_success_without_repeat_is_terminal(tmp_path: Path) -> None:
    orchestrator, fake, store = make_orchestrator(tmp_path, write_tasks(tmp_path, {"id": "a"}), [ok()])

    assert orchestrator.tick() is True
    assert orchestrator.tick() is False

    runtime = store.load().tasks["a"]
    assert runtime.status == TaskStatus.SUCCESS
    assert runtime.next_eligible_at == TERMINAL_SENTINEL
    assert runtime.attempts == 1
    assert runtime.last_exit_code == 0
    assert runtime.last_log_file == "log.jsonl"
    assert runtime.last_run_id.startswith("a-1-")
    assert fake.calls == [("a", 1)]


def test_success_with_repeat_returns_to_pending(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a", "repeatDelayMs": 60_000})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [ok()])

    assert orchestrator.tick() is True
    assert orchestrator.tick() is False

    runtime = store.load().tasks["a"]
    assert runtime.status == TaskStatus.PENDING
    assert runtime.next_eligible_at == runtime.last_run_ended_at + 60_000
    assert runtime.last_error is None


def test_repeatable_task_keeps_counting_attempts(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a", "repeatDelayMs": 1, "maxAttempts": 1})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [ok(), ok()])

    assert orchestrator.tick() is True
    time.sleep(0.01)
    assert orchestrator.tick() is True

    assert fake.calls == [("a", 1), ("a", 2)]
    assert store.load().tasks["a"].attempts == 2


def test_failure_schedules_retry(tmp_path: Path) -> None:
    orchestrator, fake, store = make_orchestrator(
        tmp_path, write_tasks(tmp_path, {"id": "a", "retryDelayMs": 45_000}), [failed("bad exit")]
    )

    assert orchestrator.tick() is True

    runtime = store.load().tasks["a"]
    assert runtime.status == TaskStatus.ERROR
    assert runtime.last_error == "bad exit"
    assert runtime.next_eligible_at == runtime.last_run_ended_at + 45_000
    assert orchestrator.tick() is False


def test_retry_exhaustion(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a", "maxAttempts": 2, "retryDelayMs": 1})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [failed(), failed()])

    assert orchestrator.tick() is True
    time.sleep(0.01)
    assert orchestrator.tick() is True
    time.sleep(0.01)
    assert orchestrator.tick() is False

    runtime = store.load().tasks["a"]
    assert runtime.status == TaskStatus.ERROR
    assert runtime.attempts == 2
    assert runtime.next_eligible_at == TERMINAL_SENTINEL
    assert fake.calls == [("a", 1), ("a", 2)]


def test_first_eligible_task_in_registry_order(tmp_path: Path) -> None:
    tasks_path = write_tasks(
        tmp_path,
        {"id": "disabled", "enabled": False},
        {"id": "first"},
        {"id": "second"},
    )
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [ok(), ok()])

    orchestrator.tick()
    orchestrator.tick()

    assert fake.calls == [("first", 1), ("second", 1)]
    assert store.load().tasks["disabled"].status == TaskStatus.PENDING


def test_attempt_is_persisted_as_running_before_the_process_starts(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a"}, {"id": "b"})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [ok(), failed()])

    orchestrator.tick()
    orchestrator.tick()

    for (task_id, _attempt), snapshot in zip(fake.calls, fake.snapshots):
        running = [tid for tid, runtime in snapshot.tasks.items() if runtime.status == TaskStatus.RUNNING]
        assert running == [task_id]
        assert snapshot.tasks[task_id].last_error is None
    final = store.load()
    assert all(runtime.status != TaskStatus.RUNNING for runtime in final.tasks.values())


def test_every_attempt_is_recorded_in_history(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a", "name": "Alpha", "retryDelayMs": 1})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [failed("first"), ok()])

    orchestrator.tick()
    time.sleep(0.01)
    orchestrator.tick()

    runs = store.load().runs
    assert [(run.attempt, run.status, run.error) for run in runs] == [
        (1, TaskStatus.ERROR, "first"),
        (2, TaskStatus.SUCCESS, None),
    ]
    assert runs[0].task_name == "Alpha"
    assert runs[0].run_id != runs[1].run_id


def test_history_stays_bounded(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a"})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [ok()])
    old_runs = [
        {"runId": f"old-{index}", "taskId": "old", "taskName": "Old", "status": "success", "attempt": 1}
        for index in range(HISTORY_LIMIT)
    ]
    store.path.write_text(json.dumps({"version": 1, "tasks": {}, "runs": old_runs}), encoding="utf-8")

    orchestrator.tick()

    runs = store.load().runs
    assert len(runs) == HISTORY_LIMIT
    assert runs[0].run_id == "old-1"
    assert runs[-1].task_id == "a"


def test_crash_recovery_on_status_read(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a"})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [])
    original = json.dumps(
        {"version": 1, "tasks": {"a": {"status": "running", "attempts": 1, "nextEligibleAt": 0}}, "runs": []}
    )
    store.path.write_text(original, encoding="utf-8")
    before = int(time.time() * 1000)

    tasks, document = orchestrator.status()

    runtime = document.tasks["a"]
    assert runtime.status == TaskStatus.ERROR
    assert runtime.last_error == RESTART_MESSAGE
    assert runtime.attempts == 1
    assert before <= runtime.next_eligible_at <= int(time.time() * 1000)
    assert store.path.read_text(encoding="utf-8") == original
    assert fake.calls == []


def test_recovered_task_is_retried(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a"})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [ok()])
    store.path.write_text(
        json.dumps({"version": 1, "tasks": {"a": {"status": "running", "attempts": 1}}, "runs": []}),
        encoding="utf-8",
    )

    assert orchestrator.tick() is True

    assert fake.calls == [("a", 2)]
    assert store.load().tasks["a"].status == TaskStatus.SUCCESS


def test_removed_tasks_lose_their_runtime(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a"})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [])
    store.path.write_text(
        json.dumps({"version": 1, "tasks": {"gone": {"status": "error", "attempts": 3}}, "runs": []}),
        encoding="utf-8",
    )
    tasks_path.write_text(json.dumps({"tasks": []}), encoding="utf-8")

    assert orchestrator.tick() is False

    assert store.load().tasks == {}


def test_run_forever_stops_when_requested(tmp_path: Path) -> None:
    tasks_path = write_tasks(tmp_path, {"id": "a"})
    orchestrator, fake, store = make_orchestrator(tmp_path, tasks_path, [])

    def stop_during_run(task, attempt, logs_dir, *, agent_bin):
        orchestrator.stop()
        return ok()

    orchestrator.runner = stop_during_run
    orchestrator.run_forever()

    assert store.load().tasks["a"].status == TaskStatus.SUCCESS


def test_is_eligible_rules(tmp_path: Path) -> None:
    from task_orchestrator.models import Task, TaskRuntime

    task = Task(id="a", name="A", prompt="p", working_directory=str(tmp_path), max_attempts=2)

    assert is_eligible(task, TaskRuntime(), now=0)
    assert not is_eligible(task, TaskRuntime(next_eligible_at=10), now=5)
    assert is_eligible(task, TaskRuntime(status=TaskStatus.ERROR, attempts=1), now=0)
    assert not is_eligible(task, TaskRuntime(status=TaskStatus.ERROR, attempts=2), now=0)
    assert not is_eligible(task, TaskRuntime(status=TaskStatus.RUNNING), now=0)
    assert not is_eligible(task, TaskRuntime(status=TaskStatus.SUCCESS), now=0)


def test_spawn_error_is_recorded_not_raised(tmp_path: Path) -> None:
    tasks_path = tmp_path / "tasks.json"
    tasks_path.write_text(
        json.dumps([{"id": "a", "name": "A", "prompt": "fix\u0000it", "workingDirectory": str(tmp_path)}]),
        encoding="utf-8",
    )
    store = StateStore(tmp_path / "state.json")
    orchestrator = Orchestrator(tasks_path, store, tmp_path / "logs", agent_bin="/bin/true")

    assert orchestrator.tick() is True

    document = store.load()
    assert document.tasks["a"].status == TaskStatus.ERROR
    assert document.tasks["a"].attempts == 1
    assert len(document.runs) == 1
    assert document.runs[0].error.startswith("failed to spawn")
