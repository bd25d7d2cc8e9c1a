"""Entry point for ``python -m task_orchestrator``."""
from __future__ import annotations

from .cli import app

__all__ = ["app"]


if __name__ == "__main__":
    app()
