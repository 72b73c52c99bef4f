# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

from taskwarden.core.state import AppState
from taskwarden.processes.supervisor import ProcessSupervisor
from taskwarden.tasks.task_engine import TaskEngine
from taskwarden.tasks.task_store import JsonTaskStore

from .fakes import FakeSupervisor


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and the engine.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the developer's environment and .env.
    Delays are zero so lifecycle tests do not sleep.
    """
    return SimpleNamespace(
        app_name="taskwarden-test",
        log_level="DEBUG",
        data_dir=tmp_path,
        tasks_file=tmp_path / "tasks.json",
        logs_dir=tmp_path / "logs",
        auto_save=True,
        grace_period_seconds=0.2,
        conflict_settle_seconds=0.0,
        restart_delay_seconds=0.0,
        log_open_timeout_seconds=5.0,
        log_tail_lines=50,
    )


@pytest.fixture()
def store(settings: SimpleNamespace) -> JsonTaskStore:
    return JsonTaskStore(settings.tasks_file)


@pytest.fixture()
def fake_supervisor() -> FakeSupervisor:
    return FakeSupervisor()


def make_engine(settings: SimpleNamespace, store, supervisor) -> TaskEngine:
    engine = TaskEngine(
        store,
        supervisor,
        logs_dir=settings.logs_dir,
        auto_save=settings.auto_save,
        grace_period=settings.grace_period_seconds,
        conflict_settle_delay=settings.conflict_settle_seconds,
        restart_delay=settings.restart_delay_seconds,
        log_open_timeout=settings.log_open_timeout_seconds,
    )
    engine.load()
    return engine


@pytest.fixture()
def engine(settings: SimpleNamespace, store: JsonTaskStore, fake_supervisor: FakeSupervisor) -> TaskEngine:
    """Engine over the real JSON store and a fake supervisor (no OS processes)."""
    return make_engine(settings, store, fake_supervisor)


@pytest_asyncio.fixture()
async def supervisor():
    """Real supervisor; every child still alive at teardown is killed."""
    sup = ProcessSupervisor(grace_period=0.2)
    yield sup
    await sup.aclose(0.1)


@pytest.fixture()
def state(settings: SimpleNamespace, engine: TaskEngine, fake_supervisor: FakeSupervisor) -> AppState:
    """
    AppState wired with the fake supervisor.

    The supervisor slot expects a ProcessSupervisor; command tests that need
    /ps use a real one through `real_state`.
    """
    return AppState(settings=settings, engine=engine, supervisor=fake_supervisor)  # type: ignore[arg-type]


@pytest.fixture()
def real_state(settings: SimpleNamespace, store: JsonTaskStore, supervisor: ProcessSupervisor) -> AppState:
    return AppState(settings=settings, engine=make_engine(settings, store, supervisor), supervisor=supervisor)
