# src/taskwarden/processes/process_models.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class ProcessStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ProcessHandle:
    """
    Opaque reference to a supervised process.

    Identity matters: the engine compares handles with `is` to decide whether an
    exit event still belongs to the task it was spawned for.
    """

    id: str
    task_id: str
    pid: int


@dataclass(slots=True)
class BackgroundProcess:
    id: str
    task_id: str
    process_id: int
    command: str
    status: ProcessStatus
    started_at: datetime
    log_file: str | None = None
    exit_code: int | None = None
    output: str | None = None
    finished_at: datetime | None = None
