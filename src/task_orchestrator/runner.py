"""Supervision of a single agent process attempt."""
from __future__ import annotations

import codecs
import json
import logging
import re
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Optional

from .config import (
    DEFAULT_AGENT_BIN,
    KILL_GRACE_SECONDS,
    OUTPUT_TAIL_CHARS,
    STDERR_TAIL_CHARS,
    agent_environment,
    ensure_dir,
)
from .models import RunResult, Task
from .store import now_ms

logger = logging.getLogger(__name__)

# Bounds the wait for output readers after the process is gone; a grandchild
# can keep the pipes open after its parent exits.
READER_JOIN_SECONDS = 5.0


def build_run_prompt(task: Task, attempt: int, timestamp: Optional[datetime] = None) -> str:
    timestamp = timestamp or datetime.now(timezone.utc)
    return "\n".join(
        [
            "[Orchestrated Claude Code run]",
            f"Task: {task.name}",
            f"Task ID: {task.id}",
            f"Attempt: {attempt}/{task.max_attempts}",
            f"Timestamp: {timestamp.isoformat(timespec='milliseconds')}",
            "",
            task.prompt,
        ]
    )


def build_command(task: Task, prompt: str, agent_bin: str = DEFAULT_AGENT_BIN) -> list[str]:
    command = [agent_bin, "-p", "--output-format", "stream-json", "--verbose"]
    if task.model:
        command += ["--model", task.model]
    if task.system_prompt:
        command += ["--append-system-prompt", task.system_prompt]
    if task.allowed_tools:
        command += ["--allowedTools", *task.allowed_tools]
    if task.dangerously_skip_permissions:
        command.append("--dangerously-skip-permissions")
    command += ["--", prompt]
    return command


def _keep_tail(buffer: str, text: str, limit: int) -> str:
    combined = buffer + text
    return combined[-limit:] if len(combined) > limit else combined


def _parse_record(line: str) -> Optional[dict[str, Any]]:
    try:
        record = json.loads(line)
    except ValueError:
        return None
    return record if isinstance(record, dict) else None


class _OutputCapture:
    """Collects what the agent prints and mirrors it into the attempt log.

    Both output readers call into it from their own threads.
    """

    def __init__(self, log_handle: IO[str]) -> None:
        self._lock = threading.Lock()
        self._log = log_handle
        self._closed = False
        self.tail = ""
        self.stderr_tail = ""
        self.result_error: Optional[str] = None

    def on_stdout_line(self, line: str) -> None:
        line = line.rstrip()
        if not line:
            return
        record = _parse_record(line)
        with self._lock:
            self._write(line)
            self.tail = _keep_tail(self.tail, line + "\n", OUTPUT_TAIL_CHARS)
            if record is not None and record.get("type") == "result" and record.get("is_error") is True:
                error = record.get("error")
                self.result_error = error if isinstance(error, str) else "result reported is_error=true"

    def on_stderr_chunk(self, text: str) -> None:
        with self._lock:
            self.stderr_tail = _keep_tail(self.stderr_tail, text, STDERR_TAIL_CHARS)
            self.tail = _keep_tail(self.tail, text, OUTPUT_TAIL_CHARS)
            self._write(json.dumps({"type": "stderr", "data": text}, ensure_ascii=False))

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def snapshot(self) -> tuple[str, str, Optional[str]]:
        with self._lock:
            return self.tail, self.stderr_tail, self.result_error

    def _write(self, line: str) -> None:
        if self._closed:
            return
        self._log.write(line + "\n")
        self._log.flush()


def _pump_stdout(stream: IO[bytes], capture: _OutputCapture) -> None:
    with stream:
        for raw in stream:
            capture.on_stdout_line(raw.decode("utf-8", errors="replace"))


def _pump_stderr(stream: IO[bytes], capture: _OutputCapture) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    with stream:
        while True:
            chunk = stream.read1(65536)  # type: ignore[attr-defined]
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                capture.on_stderr_chunk(text)
    rest = decoder.decode(b"", final=True)
    if rest:
        capture.on_stderr_chunk(rest)


def _stop_process(process: subprocess.Popen, task: Task) -> int:
    """Ask the process to terminate, then kill it once the grace window is over."""

    process.terminate()
    try:
        return process.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("Task %s ignored SIGTERM; sending SIGKILL", task.id)
        process.kill()
        return process.wait()


def _failure_message(task: Task, exit_code: int, timed_out: bool, capture: _OutputCapture) -> Optional[str]:
    tail, stderr_tail, result_error = capture.snapshot()
    if timed_out:
        return f"timed out after {task.run_timeout_ms}ms"
    if result_error:
        return result_error
    if exit_code != 0:
        return stderr_tail.strip() or f"exited with code {exit_code}"
    if task.success_regex:
        try:
            pattern = re.compile(task.success_regex, re.MULTILINE)
        except re.error as exc:
            return f"invalid successRegex: {exc}"
        if not pattern.search(tail):
            return f"successRegex did not match task output: {task.success_regex}"
    return None


def run_task(
    task: Task,
    attempt: int,
    logs_dir: Path,
    *,
    agent_bin: str = DEFAULT_AGENT_BIN,
) -> RunResult:
    """Run one attempt of ``task`` and describe how it ended.

    Never raises: a missing working directory, a failed spawn, a timeout, a
    reported error result, a non-zero exit and an unmatched ``successRegex``
    all come back as a result with ``ok=False``.
    """

    directory = Path(task.working_directory)
    if not directory.exists():
        return RunResult(False, f"Directory not found: {directory}", None, 0, None)
    if not directory.is_dir():
        return RunResult(False, f"Not a directory: {directory}", None, 0, None)

    started_at = now_ms()
    log_file = logs_dir / f"{task.id}-{started_at}.jsonl"
    try:
        ensure_dir(logs_dir)
        log_handle = log_file.open("a", encoding="utf-8")
    except OSError as exc:
        return RunResult(False, f"Failed to open log file {log_file}: {exc}", None, 0, None)

    with log_handle:
        return _supervise(task, attempt, log_handle, str(log_file), agent_bin)


def _supervise(task: Task, attempt: int, log_handle: IO[str], log_file: str, agent_bin: str) -> RunResult:
    command = build_command(task, build_run_prompt(task, attempt), agent_bin)
    capture = _OutputCapture(log_handle)
    started = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    logger.debug("Starting %s in %s", agent_bin, task.working_directory)
    try:
        process = subprocess.Popen(
            command,
            cwd=task.working_directory,
            env=agent_environment(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            # Terminal interrupts go to the orchestrator only; the attempt is
            # left to finish on its own.
            start_new_session=True,
        )
    except (OSError, ValueError) as exc:  # ValueError: NUL byte in an argument
        return RunResult(False, f"failed to spawn {agent_bin}: {exc}", None, elapsed_ms(), log_file)

    readers = [
        threading.Thread(target=_pump_stdout, args=(process.stdout, capture), daemon=True),
        threading.Thread(target=_pump_stderr, args=(process.stderr, capture), daemon=True),
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    timeout = task.run_timeout_ms / 1000 if task.run_timeout_ms > 0 else None
    try:
        exit_code = process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning("Task %s timed out after %sms", task.id, task.run_timeout_ms)
        exit_code = _stop_process(process, task)

    for reader in readers:
        reader.join(READER_JOIN_SECONDS)
    capture.close()

    error = _failure_message(task, exit_code, timed_out, capture)
    return RunResult(error is None, error, exit_code, elapsed_ms(), log_file)


__all__ = ["build_command", "build_run_prompt", "run_task"]
