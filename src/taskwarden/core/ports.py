# src/taskwarden/core/ports.py

"""
Ports (interfaces) used by the core.

The engine depends on Protocols instead of concrete implementations, so the
storage backend and the process supervisor can be swapped (and faked in tests).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import BinaryIO, Protocol

from ..processes.process_models import ProcessHandle
from ..tasks.task_models import Task

ExitListener = Callable[[ProcessHandle, int | None], Awaitable[None]]
# Called exactly once per spawned process with (handle, exit_code).


class TaskRepo(Protocol):
    """Load-all / save-all persistence of the task registry."""

    def load_all(self) -> list[Task]: ...
    def save_all(self, tasks: Iterable[Task]) -> None: ...


class ProcessRunner(Protocol):
    """What the engine needs from the process supervisor."""

    async def spawn(
            self,
            command: str,
            *,
            task_id: str,
            output: BinaryIO,
            cwd: str | None = None,
    ) -> ProcessHandle: ...

    def terminate(self, handle: ProcessHandle, grace_period: float | None = None) -> bool: ...
    def is_running(self, handle: ProcessHandle) -> bool: ...
    def add_exit_listener(self, listener: ExitListener) -> None: ...
