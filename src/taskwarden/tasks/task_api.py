# src/taskwarden/tasks/task_api.py

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from pathlib import Path

from ..errors import TaskIOError
from .task_models import Task, TaskStatus, TaskType

logger = logging.getLogger(__name__)

BUILD_HINTS = ("build", "compile")
SERVE_HINTS = ("serve", "dev", "start")


def suggest_actions(tasks: Iterable[Task], command: str | None) -> list[str]:
    """
    Advisory hints for a command the user is about to run.

    Pure function of the task snapshot and the command text; it never
    influences lifecycle decisions.
    """
    if not command:
        return []

    running = [t for t in tasks if t.status == TaskStatus.RUNNING]
    suggestions: list[str] = []

    if any(h in command for h in BUILD_HINTS):
        serve_ids = [t.id for t in running if t.task_type == TaskType.SERVE]
        if serve_ids:
            suggestions.append(
                f"Suggestion: Stop running servers before build: {', '.join(serve_ids)}"
            )

    if any(h in command for h in SERVE_HINTS):
        build_ids = [t.id for t in running if t.task_type == TaskType.BUILD]
        if build_ids:
            suggestions.append(f"Warning: Build tasks are running: {', '.join(build_ids)}")

    return suggestions


def read_tail(path: str | Path, lines: int = 50) -> str | None:
    """
    Return the last `lines` lines of a text file, or None if it does not exist.

    Reads the file directly (no external `tail`). The writer may still be
    appending, so the last line can be partial.
    """
    path = Path(path)
    if not path.exists():
        return None
    n = max(0, int(lines))
    try:
        with path.open("r", encoding="utf-8", errors="replace") as fh:
            tail = deque(fh, maxlen=n) if n else deque()
    except OSError as error:
        raise TaskIOError(f"Failed to read log file {path}: {error}") from error
    return "".join(tail)
