# src/taskwarden/core/state.py

from __future__ import annotations

from dataclasses import dataclass

from ..config import Settings
from ..processes.supervisor import ProcessSupervisor
from ..tasks.task_engine import TaskEngine


@dataclass
class AppState:
    # Settings live on the state so command handlers can read defaults.
    settings: Settings

    engine: TaskEngine
    supervisor: ProcessSupervisor
