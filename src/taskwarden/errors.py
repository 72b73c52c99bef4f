# src/taskwarden/errors.py

"""Exception hierarchy for taskwarden."""

from __future__ import annotations


class TaskwardenError(Exception):
    """Base exception for taskwarden."""


class TaskNotFoundError(TaskwardenError):
    """Unknown task id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class SpawnError(TaskwardenError):
    """The operating system could not create the process."""


class TaskIOError(TaskwardenError):
    """Log file or persistence I/O failure (including open timeouts)."""


class StorageCorruptError(TaskwardenError):
    """The persisted task document could not be parsed."""


class InvalidArgumentError(TaskwardenError):
    """Caller supplied an argument the engine cannot act on."""


class InvalidTransitionError(InvalidArgumentError):
    """Requested status change leaves a terminal state."""


class DependencyCycleError(TaskwardenError):
    """Starting a task would recurse through its own dependency chain."""

    def __init__(self, chain: tuple[str, ...]) -> None:
        super().__init__("Dependency cycle: " + " -> ".join(chain))
        self.chain = chain
