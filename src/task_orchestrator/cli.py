"""Typer commands exposed to the user."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import (
    AGENT_BIN_ENVVAR,
    DEFAULT_AGENT_BIN,
    DEFAULT_LOGS_DIR,
    DEFAULT_POLL_MS,
    DEFAULT_STATE_FILE,
    DEFAULT_TASKS_FILE,
    resolve_path,
    setup_logging,
)
from .registry import (
    TaskDefinitionError,
    TaskSourceError,
    build_task_entry,
    read_task_source,
    save_tasks,
)
from .scheduler_service import Orchestrator, format_time
from .store import StateStore

console = Console()
app = typer.Typer(help="Run declared Claude Code tasks one at a time, with retries and timeouts.")


def _orchestrator(ctx: typer.Context, poll_ms: int = DEFAULT_POLL_MS) -> Orchestrator:
    return Orchestrator(
        ctx.obj["tasks"],
        StateStore(ctx.obj["state"]),
        ctx.obj["logs"],
        agent_bin=ctx.obj["agent_bin"],
        poll_ms=poll_ms,
    )


@app.callback()
def main(
    ctx: typer.Context,
    tasks: Path = typer.Option(DEFAULT_TASKS_FILE, "--tasks", help="Path to the task list (JSON)."),
    state: Path = typer.Option(DEFAULT_STATE_FILE, "--state", help="Path to the state document."),
    logs: Path = typer.Option(DEFAULT_LOGS_DIR, "--logs", help="Directory for per-attempt logs."),
    agent_bin: str = typer.Option(
        DEFAULT_AGENT_BIN,
        "--agent-bin",
        envvar=AGENT_BIN_ENVVAR,
        help="Agent executable to invoke for every attempt.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug diagnostics."),
) -> None:
    setup_logging(verbose)
    ctx.obj = {
        "tasks": resolve_path(tasks),
        "state": resolve_path(state),
        "logs": resolve_path(logs),
        "agent_bin": agent_bin,
    }


@app.command("once")
def run_once(ctx: typer.Context) -> None:
    """Run the first eligible task, if any, and exit."""

    try:
        ran = _orchestrator(ctx).tick()
    except TaskSourceError as exc:
        console.print(f"[red]Fatal: {exc}[/red]")
        raise typer.Exit(code=1)
    if not ran:
        console.print("[yellow]No runnable task found.[/yellow]")


@app.command("run")
def run_forever(
    ctx: typer.Context,
    poll_ms: int = typer.Option(
        DEFAULT_POLL_MS, "--poll-ms", min=1, help="Pause between ticks when nothing was eligible."
    ),
) -> None:
    """Keep running eligible tasks until interrupted."""

    try:
        _orchestrator(ctx, poll_ms).run_forever()
    except TaskSourceError as exc:
        console.print(f"[red]Fatal: {exc}[/red]")
        raise typer.Exit(code=1)


@app.command("status")
def show_status(ctx: typer.Context) -> None:
    """Show every task with its runtime state."""

    try:
        tasks, document = _orchestrator(ctx).status()
    except TaskSourceError as exc:
        console.print(f"[red]Fatal: {exc}[/red]")
        raise typer.Exit(code=1)

    if not tasks:
        console.print("[yellow]No tasks configured.[/yellow]")
        return

    table = Table(title=f"Tasks: {len(tasks)}", header_style="bold blue")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Next run")
    table.add_column("Last error")

    for task in tasks:
        runtime = document.tasks[task.id]
        table.add_row(
            task.id,
            task.name if task.enabled else f"{task.name} (disabled)",
            runtime.status,
            f"{runtime.attempts}/{task.max_attempts}",
            format_time(runtime.next_eligible_at),
            runtime.last_error or "-",
        )

    console.print(table)


@app.command("runs")
def show_runs(
    ctx: typer.Context,
    task_id: Optional[str] = typer.Option(None, "--task", help="Only show runs of this task id."),
    limit: int = typer.Option(10, "--limit", min=1, help="Number of runs to show."),
) -> None:
    """Show the most recent attempts, newest first."""

    document = StateStore(ctx.obj["state"]).load()
    runs = [run for run in document.runs if task_id is None or run.task_id == task_id]
    if not runs:
        console.print("[yellow]No run history.[/yellow]")
        return

    table = Table(title="Run history", header_style="bold magenta")
    table.add_column("Run")
    table.add_column("Task")
    table.add_column("Attempt")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Status")
    table.add_column("Exit code")
    table.add_column("Log")
    table.add_column("Error")

    for run in reversed(runs[-limit:]):
        table.add_row(
            run.run_id or "-",
            run.task_name or run.task_id,
            str(run.attempt),
            format_time(run.started_at),
            format_time(run.ended_at),
            run.status,
            str(run.exit_code) if run.exit_code is not None else "-",
            run.log_file or "-",
            run.error or "-",
        )

    console.print(table)


@app.command("add")
def add_task(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", help="Task name"),
    cwd: Path = typer.Option(..., "--cwd", help="Working directory of the agent"),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Prompt text"),
    prompt_file: Optional[Path] = typer.Option(None, "--prompt-file", help="Read the prompt from a file"),
    task_id: Optional[str] = typer.Option(None, "--id", help="Explicit task id"),
    model: str = typer.Option("", "--model", help="Model passed to the agent"),
    system_prompt: str = typer.Option("", "--system-prompt", help="Text appended to the system prompt"),
    allowed_tools: str = typer.Option("", "--allowed-tools", help="Comma separated tool allowlist"),
    skip_permissions: bool = typer.Option(
        False, "--dangerously-skip-permissions", help="Let the agent skip permission prompts"
    ),
    disabled: bool = typer.Option(False, "--disabled", help="Declare the task disabled"),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts"),
    retry_delay_ms: Optional[int] = typer.Option(None, "--retry-delay-ms"),
    run_timeout_ms: Optional[int] = typer.Option(None, "--run-timeout-ms"),
    repeat_delay_ms: Optional[int] = typer.Option(None, "--repeat-delay-ms"),
    success_regex: str = typer.Option("", "--success-regex", help="Pattern the output must match"),
) -> None:
    """Append a task to the task list."""

    tasks_path: Path = ctx.obj["tasks"]
    if not prompt and prompt_file:
        try:
            prompt = resolve_path(prompt_file).read_text(encoding="utf-8")
        except OSError as exc:
            console.print(f"[red]Cannot read prompt file: {exc}[/red]")
            raise typer.Exit(code=1)
    if not prompt or not prompt.strip():
        console.print("[red]Either --prompt or --prompt-file is required.[/red]")
        raise typer.Exit(code=1)

    try:
        source = read_task_source(tasks_path, missing_ok=True)
        task = build_task_entry(
            name=name,
            prompt=prompt,
            working_directory=cwd,
            existing=source.entries,
            task_id=task_id,
            enabled=not disabled,
            model=model,
            system_prompt=system_prompt,
            allowed_tools=tuple(allowed_tools.split(",")),
            dangerously_skip_permissions=skip_permissions,
            max_attempts=max_attempts,
            retry_delay_ms=retry_delay_ms,
            run_timeout_ms=run_timeout_ms,
            repeat_delay_ms=repeat_delay_ms,
            success_regex=success_regex,
        )
    except (TaskSourceError, TaskDefinitionError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    source.entries.append(task)
    save_tasks(tasks_path, source)
    console.print(f"[green]Added task '{task.name}' ({task.id}) to {tasks_path}.[/green]")


__all__ = ["app"]
