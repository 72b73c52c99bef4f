# src/taskwarden/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local directories exist,
- wires the JSON store, the process supervisor and the engine into AppState,
- loads the persisted registry exactly once.
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.state import AppState
from ..processes.supervisor import ProcessSupervisor
from ..tasks.task_engine import TaskEngine
from ..tasks.task_store import JsonTaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_file.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    Must be called with a running event loop available to the caller later on
    (the engine's lock and the supervisor's timers bind to it lazily).
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    supervisor = ProcessSupervisor(grace_period=settings.grace_period_seconds)
    engine = TaskEngine(
        JsonTaskStore(settings.tasks_file),
        supervisor,
        logs_dir=settings.logs_dir,
        auto_save=settings.auto_save,
        grace_period=settings.grace_period_seconds,
        conflict_settle_delay=settings.conflict_settle_seconds,
        restart_delay=settings.restart_delay_seconds,
        log_open_timeout=settings.log_open_timeout_seconds,
    )
    engine.load()
    if engine.storage_error is not None:
        logger.warning("Started with an empty task list: %s", engine.storage_error)

    return AppState(settings=settings, engine=engine, supervisor=supervisor)
