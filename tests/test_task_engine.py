# tests/test_task_engine.py

from __future__ import annotations

import asyncio
import io
import json
import threading

import pytest

from taskwarden.errors import (
    DependencyCycleError,
    InvalidArgumentError,
    InvalidTransitionError,
    SpawnError,
    TaskIOError,
    TaskNotFoundError,
)
from taskwarden.tasks import task_engine
from taskwarden.tasks.task_models import TaskStatus, TaskType
from taskwarden.tasks.task_store import JsonTaskStore

from .conftest import make_engine
from .fakes import FakeSupervisor, MemoryTaskRepo


@pytest.mark.asyncio
async def test_create_task_defaults_and_persists(engine, store) -> None:
    task = await engine.create_task("write docs", tags=["docs", "v1"])

    assert task.status == TaskStatus.PENDING
    assert task.task_type == TaskType.TASK
    assert task.tags == ("docs", "v1")
    assert task.session_id == engine.session_id
    assert task.created_at == task.updated_at

    stored = {t.id: t for t in store.load_all()}
    assert stored[task.id].title == "write docs"


@pytest.mark.asyncio
async def test_get_task_returns_detached_copy(engine) -> None:
    task = await engine.create_task("a", metadata={"k": 1})

    copy = engine.get_task(task.id)
    copy.metadata["k"] = 2
    copy.title = "changed"

    again = engine.get_task(task.id)
    assert again.metadata == {"k": 1}
    assert again.title == "a"
    assert engine.get_task("missing") is None


@pytest.mark.asyncio
async def test_update_task_bumps_updated_at_and_ignores_identity_fields(engine) -> None:
    task = await engine.create_task("a")

    first = await engine.update_task(task.id, title="b", id="other")
    second = await engine.update_task(task.id, priority="high")

    assert first.id == task.id
    assert first.title == "b"
    assert first.updated_at > task.updated_at
    assert second.updated_at > first.updated_at
    assert second.created_at == task.created_at


@pytest.mark.asyncio
async def test_update_task_rejects_bad_input(engine) -> None:
    task = await engine.create_task("a")

    with pytest.raises(InvalidArgumentError):
        await engine.update_task(task.id, colour="red")
    with pytest.raises(InvalidArgumentError):
        await engine.update_task(task.id, priority="whenever")
    with pytest.raises(TaskNotFoundError):
        await engine.update_task("missing", title="x")


@pytest.mark.asyncio
async def test_terminal_status_cannot_be_left_by_update(engine) -> None:
    task = await engine.create_task("a")
    done = await engine.complete_task(task.id)

    assert done.status == TaskStatus.COMPLETED
    assert done.completed_at is not None

    with pytest.raises(InvalidTransitionError):
        await engine.update_task(task.id, status="in_progress")


@pytest.mark.asyncio
async def test_start_without_command_goes_in_progress(engine, fake_supervisor: FakeSupervisor) -> None:
    task = await engine.create_task("think")

    started = await engine.start(task.id)

    assert started.status == TaskStatus.IN_PROGRESS
    assert started.process_id is None
    assert fake_supervisor.spawned == []


@pytest.mark.asyncio
async def test_start_with_command_spawns_and_records_process(engine, fake_supervisor, settings) -> None:
    task = await engine.create_task("dev server", command="npm run dev", task_type="serve", cwd="/srv/app")

    started = await engine.start(task.id)
    handle = fake_supervisor.last_handle(task.id)

    assert started.status == TaskStatus.RUNNING
    assert started.process_id == handle.pid
    assert started.log_file == str(settings.logs_dir / f"{task.id}.log")
    assert started.metadata["backgroundProcessId"] == handle.id
    assert fake_supervisor.spawned[0].command == "npm run dev"
    assert fake_supervisor.spawned[0].cwd == "/srv/app"
    assert fake_supervisor.spawned[0].log_name == started.log_file


@pytest.mark.asyncio
async def test_start_twice_does_not_spawn_again(engine, fake_supervisor) -> None:
    task = await engine.create_task("srv", command="sleep 100")

    await engine.start(task.id)
    again = await engine.start(task.id)

    assert again.status == TaskStatus.RUNNING
    assert len(fake_supervisor.spawned) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("exit_code", "expected"),
    [(0, TaskStatus.COMPLETED), (2, TaskStatus.FAILED), (None, TaskStatus.FAILED)],
)
async def test_exit_event_sets_terminal_status(engine, fake_supervisor, exit_code, expected) -> None:
    task = await engine.create_task("job", command="make")
    await engine.start(task.id)

    await fake_supervisor.finish(fake_supervisor.last_handle(task.id), exit_code)

    done = engine.get_task(task.id)
    assert done.status == expected
    assert done.exit_code == exit_code
    assert (done.completed_at is not None) == (expected == TaskStatus.COMPLETED)


@pytest.mark.asyncio
async def test_stop_then_natural_exit_stays_cancelled(engine, fake_supervisor) -> None:
    task = await engine.create_task("srv", command="sleep 5")
    started = await engine.start(task.id)
    handle = fake_supervisor.last_handle(task.id)

    stopped = await engine.stop(task.id)
    await fake_supervisor.finish(handle, 0)

    assert stopped.status == TaskStatus.CANCELLED
    assert fake_supervisor.terminated == [(handle, 0.2)]

    final = engine.get_task(task.id)
    assert final.status == TaskStatus.CANCELLED
    assert final.exit_code is None
    # History fields survive the stop.
    assert final.process_id == started.process_id
    assert final.log_file == started.log_file


@pytest.mark.asyncio
async def test_complete_detaches_running_process(engine, fake_supervisor) -> None:
    task = await engine.create_task("job", command="make")
    await engine.start(task.id)

    await engine.complete_task(task.id)
    await fake_supervisor.finish(fake_supervisor.last_handle(task.id), 1)

    assert engine.get_task(task.id).status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_stop_is_noop_on_terminal_task_and_fails_on_unknown(engine, fake_supervisor) -> None:
    task = await engine.create_task("a")
    done = await engine.complete_task(task.id)

    again = await engine.stop(task.id)

    assert again.status == TaskStatus.COMPLETED
    assert again.updated_at == done.updated_at
    with pytest.raises(TaskNotFoundError):
        await engine.stop("missing")


@pytest.mark.asyncio
async def test_start_stops_running_conflicts_first(engine, fake_supervisor) -> None:
    a = await engine.create_task("server", command="serve", task_type="serve")
    await engine.start(a.id)
    a_handle = fake_supervisor.last_handle(a.id)

    b = await engine.create_task("build", command="build", task_type="build", conflicts=[a.id, "gone"])
    started = await engine.start(b.id)

    assert engine.get_task(a.id).status == TaskStatus.CANCELLED
    assert fake_supervisor.terminated[0][0] is a_handle
    assert started.status == TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_start_starts_inactive_dependencies_first(engine, fake_supervisor) -> None:
    db = await engine.create_task("db", command="postgres")
    cache = await engine.create_task("cache", command="redis-server")
    await engine.start(cache.id)

    app = await engine.create_task("app", command="app", dependencies=[db.id, cache.id, "missing"])
    await engine.start(app.id)

    # cache was already running and is not started again.
    assert fake_supervisor.spawned_task_ids() == [cache.id, db.id, app.id]
    assert engine.get_task(db.id).status == TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_dependency_cycle_is_rejected(engine, fake_supervisor) -> None:
    x = await engine.create_task("x", command="x")
    y = await engine.create_task("y", command="y", dependencies=[x.id])
    await engine.update_task(x.id, dependencies=[y.id])

    with pytest.raises(DependencyCycleError) as exc:
        await engine.start(x.id)

    assert exc.value.chain == (x.id, y.id, x.id)
    assert fake_supervisor.spawned == []


@pytest.mark.asyncio
async def test_self_conflict_and_self_dependency_are_ignored(engine, fake_supervisor) -> None:
    t = await engine.create_task("t", command="t")
    await engine.update_task(t.id, conflicts=[t.id])

    started = await engine.start(t.id)

    assert started.status == TaskStatus.RUNNING
    assert fake_supervisor.terminated == []


@pytest.mark.asyncio
async def test_unopenable_log_fails_start_without_spawning(engine, fake_supervisor, settings) -> None:
    task = await engine.create_task("job", command="make")
    (settings.logs_dir / f"{task.id}.log").mkdir(parents=True)

    with pytest.raises(TaskIOError):
        await engine.start(task.id)

    after = engine.get_task(task.id)
    assert after.status == TaskStatus.PENDING
    assert after.log_file is None
    assert fake_supervisor.spawned == []


@pytest.mark.asyncio
async def test_log_open_timeout_fails_start_and_closes_late_file(
    settings, store, fake_supervisor, monkeypatch
) -> None:
    release = threading.Event()
    late_sink = io.BytesIO()

    def hung_open(path):
        release.wait(5.0)
        return late_sink

    monkeypatch.setattr(task_engine, "_open_append_sink", hung_open)
    settings.log_open_timeout_seconds = 0.1
    engine = make_engine(settings, store, fake_supervisor)
    task = await engine.create_task("job", command="make")

    try:
        with pytest.raises(TaskIOError):
            await engine.start(task.id)
    finally:
        release.set()

    for _ in range(200):
        if late_sink.closed:
            break
        await asyncio.sleep(0.01)

    assert late_sink.closed
    assert engine.get_task(task.id).status == TaskStatus.PENDING
    assert fake_supervisor.spawned == []


@pytest.mark.asyncio
async def test_running_task_cannot_be_moved_back_by_update(engine, fake_supervisor) -> None:
    task = await engine.create_task("job", command="make")
    await engine.start(task.id)

    for status in ("pending", "in_progress"):
        with pytest.raises(InvalidTransitionError):
            await engine.update_task(task.id, status=status)

    assert engine.get_task(task.id).status == TaskStatus.RUNNING

    # Terminal moves stay allowed and detach the process.
    failed = await engine.update_task(task.id, status="failed")
    await fake_supervisor.finish(fake_supervisor.last_handle(task.id), 0)
    assert failed.status == TaskStatus.FAILED
    assert engine.get_task(task.id).status == TaskStatus.FAILED


@pytest.mark.asyncio
async def test_spawn_failure_marks_task_failed(engine, fake_supervisor) -> None:
    task = await engine.create_task("broken", command="nope")
    fake_supervisor.fail_spawn = True

    with pytest.raises(SpawnError):
        await engine.start(task.id)

    failed = engine.get_task(task.id)
    assert failed.status == TaskStatus.FAILED
    assert failed.log_file is not None


@pytest.mark.asyncio
async def test_restart_terminates_old_process_and_spawns_new_one(engine, fake_supervisor) -> None:
    task = await engine.create_task("srv", command="serve")
    await engine.start(task.id)
    old = fake_supervisor.last_handle(task.id)

    restarted = await engine.restart(task.id)
    new = fake_supervisor.last_handle(task.id)

    assert new is not old
    assert fake_supervisor.terminated[0][0] is old
    assert restarted.status == TaskStatus.RUNNING
    assert restarted.process_id == new.pid

    # The old process exiting late does not touch the restarted task.
    await fake_supervisor.finish(old, 0)
    assert engine.get_task(task.id).status == TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_delete_task_detaches_handle(engine, fake_supervisor) -> None:
    task = await engine.create_task("srv", command="serve")
    await engine.start(task.id)

    await engine.delete_task(task.id)
    await fake_supervisor.finish(fake_supervisor.last_handle(task.id), 0)

    assert engine.get_task(task.id) is None
    with pytest.raises(TaskNotFoundError):
        await engine.delete_task(task.id)


@pytest.mark.asyncio
async def test_batch_start_captures_failures_in_order(engine) -> None:
    a = await engine.create_task("a")
    b = await engine.create_task("b")

    result = await engine.batch_start([a.id, "missing", b.id])

    assert result.succeeded == [a.id, b.id]
    assert result.failed == ["missing"]


@pytest.mark.asyncio
async def test_batch_dispatch(engine) -> None:
    a = await engine.create_task("a")
    b = await engine.create_task("b")

    removed = await engine.batch("remove", [a.id, b.id])

    assert removed.succeeded == [a.id, b.id]
    assert engine.list_tasks() == []
    with pytest.raises(InvalidArgumentError):
        await engine.batch("explode", [a.id])


@pytest.mark.asyncio
async def test_stop_all_respects_filters(engine) -> None:
    web = await engine.create_task("web", command="serve", project="site", task_type="serve")
    api = await engine.create_task("api", command="serve", project="api", task_type="serve")
    notes = await engine.create_task("notes", project="site")
    idle = await engine.create_task("idle", project="site")
    for t in (web, api, notes):
        await engine.start(t.id)

    stopped = await engine.stop_all(project="site")

    assert stopped == 2
    assert engine.get_task(web.id).status == TaskStatus.CANCELLED
    assert engine.get_task(notes.id).status == TaskStatus.CANCELLED
    assert engine.get_task(api.id).status == TaskStatus.RUNNING
    assert engine.get_task(idle.id).status == TaskStatus.PENDING

    assert await engine.stop_all(task_type="serve") == 1


@pytest.mark.asyncio
async def test_cleanup_removes_only_terminal_tasks(engine) -> None:
    keep = await engine.create_task("keep")
    running = await engine.create_task("running")
    await engine.start(running.id)
    done = await engine.create_task("done")
    await engine.complete_task(done.id)
    cancelled = await engine.create_task("cancelled")
    await engine.stop(cancelled.id)

    removed = await engine.cleanup()

    assert removed == 2
    assert {t.id for t in engine.list_tasks()} == {keep.id, running.id}


@pytest.mark.asyncio
async def test_list_tasks_filters_and_sorts_by_updated_desc(engine) -> None:
    a = await engine.create_task("a", tags=["x"])
    b = await engine.create_task("b", tags=["y"], priority="high")
    c = await engine.create_task("c", tags=["x", "y"])
    await engine.update_task(a.id, description="touched last")

    assert [t.id for t in engine.list_tasks()] == [a.id, c.id, b.id]
    assert [t.id for t in engine.list_tasks(tags=["x"])] == [a.id, c.id]
    assert [t.id for t in engine.list_tasks(priority="high")] == [b.id]
    assert engine.list_tasks(session_id="another") == []


@pytest.mark.asyncio
async def test_find_by_pid_and_command(engine, fake_supervisor) -> None:
    srv = await engine.create_task("srv", command="npm run dev")
    await engine.create_task("tests", command="pytest -q")
    started = await engine.start(srv.id)

    assert engine.find_by_pid(started.process_id).id == srv.id
    assert engine.find_by_pid(1) is None
    assert [t.id for t in engine.find_by_command(r"NPM\s+run")] == [srv.id]
    with pytest.raises(InvalidArgumentError):
        engine.find_by_command("(")


@pytest.mark.asyncio
async def test_create_background_task_starts_immediately(engine, fake_supervisor) -> None:
    task = await engine.create_background_task("watcher", "tsc --watch", project="web")

    assert task.task_type == TaskType.BACKGROUND_PROCESS
    assert task.status == TaskStatus.RUNNING
    assert [t.id for t in engine.list_background_tasks()] == [task.id]
    with pytest.raises(InvalidArgumentError):
        await engine.create_background_task("empty", "  ")


@pytest.mark.asyncio
async def test_suggest_actions_uses_running_tasks(engine) -> None:
    srv = await engine.create_task("srv", command="serve", task_type="serve")
    await engine.start(srv.id)

    assert engine.suggest_actions("npm run build") == [
        f"Suggestion: Stop running servers before build: {srv.id}"
    ]
    assert engine.suggest_actions("ls") == []


@pytest.mark.asyncio
async def test_statistics_counts_by_status(engine) -> None:
    a = await engine.create_task("a")
    await engine.create_task("b")
    await engine.complete_task(a.id)

    stats = engine.statistics()

    assert stats["completed"] == 1
    assert stats["pending"] == 1
    assert stats["total"] == 2


@pytest.mark.asyncio
async def test_read_log_tail(engine, settings) -> None:
    task = await engine.create_task("job", command="make")

    assert await engine.read_log_tail(task.id) is None

    started = await engine.start(task.id)
    with open(started.log_file, "a", encoding="utf-8") as fh:
        fh.write("".join(f"line {i}\n" for i in range(100)))

    tail = await engine.read_log_tail(task.id, 3)
    assert tail == "line 97\nline 98\nline 99\n"


@pytest.mark.asyncio
async def test_export_then_import_is_idempotent(engine, settings, tmp_path) -> None:
    a = await engine.create_task("a", tags=["t"])
    await engine.create_task("b")
    dest = tmp_path / "export" / "tasks.json"

    assert await engine.export_all(dest) == 2

    other = make_engine(settings, MemoryTaskRepo(), FakeSupervisor())
    assert await other.import_all(dest) == 2
    assert await other.import_all(dest) == 0
    assert other.get_task(a.id).tags == ("t",)


def test_corrupt_storage_starts_empty(settings) -> None:
    settings.tasks_file.write_text("{not json", "utf-8")

    engine = make_engine(settings, JsonTaskStore(settings.tasks_file), FakeSupervisor())

    assert engine.list_tasks() == []
    assert engine.storage_error is not None


@pytest.mark.asyncio
async def test_state_survives_reload(engine, settings, store) -> None:
    task = await engine.create_task("persist me", command="make", conflicts=["x"])
    await engine.start(task.id)

    reloaded = make_engine(settings, JsonTaskStore(settings.tasks_file), FakeSupervisor())
    got = reloaded.get_task(task.id)

    assert got.status == TaskStatus.RUNNING
    assert got.conflicts == ("x",)
    raw = json.loads(settings.tasks_file.read_text("utf-8"))
    assert raw[0]["status"] == "running"
    assert "createdAt" in raw[0]


@pytest.mark.asyncio
async def test_auto_save_disabled_only_saves_explicitly(settings, fake_supervisor) -> None:
    settings.auto_save = False
    repo = MemoryTaskRepo()
    engine = make_engine(settings, repo, fake_supervisor)

    await engine.create_task("a")
    assert repo.saves == 0

    engine.save()
    assert repo.saves == 1
    assert len(repo.tasks) == 1
