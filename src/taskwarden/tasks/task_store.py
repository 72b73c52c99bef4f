# src/taskwarden/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from ..errors import StorageCorruptError, TaskIOError
from .task_models import Task

logger = logging.getLogger(__name__)


def read_tasks_document(path: str | Path) -> list[Task]:
    """
    Parse a JSON array of task objects.

    Raises:
    - TaskIOError if the file cannot be read
    - StorageCorruptError if the content is not a valid task array
    """
    path = Path(path)
    try:
        raw = path.read_text("utf-8")
    except OSError as error:
        raise TaskIOError(f"Failed to read {path}: {error}") from error

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as error:
        raise StorageCorruptError(f"{path} is not valid JSON: {error}") from error

    if not isinstance(data, list):
        raise StorageCorruptError(f"{path} must contain a JSON array of tasks")

    tasks: list[Task] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise StorageCorruptError(f"{path}: item #{i} is not an object")
        try:
            tasks.append(Task.from_dict(item))
        except (KeyError, ValueError, TypeError) as error:
            raise StorageCorruptError(f"{path}: item #{i} is malformed: {error!r}") from error
    return tasks


def write_tasks_document(path: str | Path, tasks: Iterable[Task]) -> None:
    """Write tasks as a pretty-printed JSON array (atomic replace)."""
    path = Path(path)
    payload: list[dict[str, Any]] = [t.to_dict() for t in tasks]
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
        os.replace(tmp, path)
    except OSError as error:
        raise TaskIOError(f"Failed to write {path}: {error}") from error


class JsonTaskStore:
    """
    Flat-file task store: the whole registry lives in one JSON document.

    The engine loads everything once at startup and writes everything back
    after each mutation. Single-process, single-writer.
    """

    def __init__(self, path: str | Path = "tasks.json") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("JsonTaskStore ready path=%s exists=%s", self._path, self._path.exists())

    @property
    def path(self) -> Path:
        return self._path

    def load_all(self) -> list[Task]:
        if not self._path.exists():
            return []
        tasks = read_tasks_document(self._path)
        logger.debug("Loaded %d tasks from %s", len(tasks), self._path)
        return tasks

    def save_all(self, tasks: Iterable[Task]) -> None:
        write_tasks_document(self._path, tasks)
        with contextlib.suppress(OSError):
            # Commands may embed credentials; keep the file private on disk.
            os.chmod(self._path, 0o600)
