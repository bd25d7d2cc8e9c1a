"""Configuration helpers for the task orchestrator."""
from __future__ import annotations

import logging
import os
from pathlib import Path

from rich.logging import RichHandler

DEFAULT_TASKS_FILE = Path("tasks.json")
DEFAULT_STATE_FILE = Path(".claude-orchestrator-state.json")
DEFAULT_LOGS_DIR = Path(".claude-orchestrator-logs")
DEFAULT_POLL_MS = 10_000
DEFAULT_AGENT_BIN = "claude"
AGENT_BIN_ENVVAR = "CLAUDE_BIN"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 30_000

KILL_GRACE_SECONDS = 5.0
OUTPUT_TAIL_CHARS = 200_000
STDERR_TAIL_CHARS = 4_000

FALLBACK_PATH = "/usr/bin:/bin:/usr/sbin:/sbin"


def resolve_path(path: Path) -> Path:
    """Expand ``~`` and return an absolute path."""

    return path.expanduser().resolve()


def ensure_dir(path: Path) -> Path:
    """Create the directory if it does not exist and return it."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def extra_search_paths() -> list[str]:
    """Conventional install locations of the agent executable.

    They are placed in front of the inherited ``PATH`` so the agent can be
    found even when the orchestrator was started from a minimal environment
    (launchd, cron, a desktop shortcut).
    """

    home = Path.home()
    return [
        str(home / ".local" / "bin"),
        str(home / ".bun" / "bin"),
        str(home / ".npm-global" / "bin"),
        str(home / "bin"),
        "/usr/local/bin",
        "/opt/homebrew/bin",
        "/opt/homebrew/sbin",
    ]


def agent_environment(base: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    current = env.get("PATH") or FALLBACK_PATH
    env["PATH"] = os.pathsep.join([*extra_search_paths(), current])
    return env


def setup_logging(verbose: bool = False) -> None:
    """Route diagnostics through Rich. Call once, from the CLI entry point."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


__all__ = [
    "AGENT_BIN_ENVVAR",
    "DEFAULT_AGENT_BIN",
    "DEFAULT_LOGS_DIR",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_POLL_MS",
    "DEFAULT_RETRY_DELAY_MS",
    "DEFAULT_STATE_FILE",
    "DEFAULT_TASKS_FILE",
    "KILL_GRACE_SECONDS",
    "OUTPUT_TAIL_CHARS",
    "STDERR_TAIL_CHARS",
    "agent_environment",
    "ensure_dir",
    "extra_search_paths",
    "resolve_path",
    "setup_logging",
]
