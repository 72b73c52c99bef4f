# src/taskwarden/tasks/task_engine.py

"""
Task lifecycle engine.

Owns the task registry and drives every state transition:
- create/read/update/delete of tasks, persisted through a TaskRepo,
- start: stop running conflicts, start missing dependencies, then spawn,
- stop/restart with graceful-then-forced termination via the supervisor,
- batch and aggregate operations that never abort on a single failure.

Exit events from the supervisor arrive asynchronously. Every mutation (from a
caller or from an exit event) happens under one asyncio.Lock, and an exit
event only counts if the engine still associates that exact handle with the
task. stop(), complete and delete detach the handle first, so a late exit can
never resurrect a cancelled task.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from pathlib import Path
from typing import Any, BinaryIO

from ..core.ports import ProcessRunner, TaskRepo
from ..errors import (
    DependencyCycleError,
    InvalidArgumentError,
    InvalidTransitionError,
    SpawnError,
    StorageCorruptError,
    TaskIOError,
    TaskNotFoundError,
    TaskwardenError,
)
from ..processes.process_models import ProcessHandle
from .task_api import read_tail, suggest_actions as _suggest_actions
from .task_models import (
    BatchResult,
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
    utc_now,
)
from .task_store import read_tasks_document, write_tasks_document

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_SECONDS = 5.0
CONFLICT_SETTLE_SECONDS = 1.0
RESTART_DELAY_SECONDS = 1.0
LOG_OPEN_TIMEOUT_SECONDS = 5.0
DEFAULT_LOG_TAIL_LINES = 50

_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "updated_at"})
_UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "status",
        "priority",
        "task_type",
        "tags",
        "command",
        "cwd",
        "project",
        "conflicts",
        "dependencies",
        "metadata",
    }
)


def _enum_value(enum_cls: Any, value: Any, field_name: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as error:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidArgumentError(f"Invalid {field_name} {value!r} (expected one of: {allowed})") from error


def _id_tuple(value: Iterable[str] | str | None) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(s.strip() for s in value if s and s.strip())


def _coerce_field(name: str, value: Any) -> Any:
    if name == "status":
        return _enum_value(TaskStatus, value, "status")
    if name == "priority":
        return _enum_value(TaskPriority, value, "priority")
    if name == "task_type":
        return _enum_value(TaskType, value, "type")
    if name in ("tags", "conflicts", "dependencies"):
        return _id_tuple(value)
    if name == "metadata":
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise InvalidArgumentError("metadata must be a dict")
        return dict(value)
    if name == "title":
        if not value or not str(value).strip():
            raise InvalidArgumentError("title is required")
        return str(value).strip()
    return value or None


def _open_append_sink(path: Path) -> BinaryIO:
    path.parent.mkdir(parents=True, exist_ok=True)
    # The supervisor records sink.name as the log path.
    return open(str(path), "ab")


def _close_late_sink(opening: asyncio.Future[BinaryIO]) -> None:
    if opening.cancelled() or opening.exception() is not None:
        return
    opening.result().close()


class TaskEngine:
    def __init__(
            self,
            store: TaskRepo,
            supervisor: ProcessRunner,
            *,
            logs_dir: str | Path,
            auto_save: bool = True,
            grace_period: float = DEFAULT_GRACE_PERIOD_SECONDS,
            conflict_settle_delay: float = CONFLICT_SETTLE_SECONDS,
            restart_delay: float = RESTART_DELAY_SECONDS,
            log_open_timeout: float = LOG_OPEN_TIMEOUT_SECONDS,
            session_id: str | None = None,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._logs_dir = Path(logs_dir)
        self._auto_save = auto_save
        self._grace_period = max(0.0, float(grace_period))
        self._conflict_settle_delay = max(0.0, float(conflict_settle_delay))
        self._restart_delay = max(0.0, float(restart_delay))
        self._log_open_timeout = max(0.1, float(log_open_timeout))

        self._tasks: dict[str, Task] = {}
        # task_id -> handle of the process the engine currently owns for it
        self._handles: dict[str, ProcessHandle] = {}
        self._lock = asyncio.Lock()
        self._loaded = False
        self._session_id = session_id or str(uuid.uuid4())

        self.storage_error: StorageCorruptError | None = None

        supervisor.add_exit_listener(self._on_process_exit)

    # ---- persistence ----

    def load(self) -> int:
        """
        Load the registry from the store (once per engine).

        A corrupt document is not fatal: the registry starts empty and the
        error is kept in `storage_error` for the caller to report.
        """
        if self._loaded:
            return len(self._tasks)
        self._loaded = True
        self._logs_dir.mkdir(parents=True, exist_ok=True)

        try:
            tasks = self._store.load_all()
        except StorageCorruptError as error:
            logger.error("Task storage is unreadable, starting with an empty registry: %s", error)
            self.storage_error = error
            tasks = []

        self._tasks = {t.id: t for t in tasks}
        logger.info("TaskEngine ready tasks=%d session=%s", len(self._tasks), self._session_id)
        return len(self._tasks)

    def save(self) -> None:
        """Write the registry regardless of auto_save."""
        self._store.save_all(list(self._tasks.values()))

    def _autosave(self) -> None:
        if self._auto_save:
            self.save()

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    # ---- sessions ----

    @property
    def session_id(self) -> str:
        return self._session_id

    def start_session(self) -> str:
        self._session_id = str(uuid.uuid4())
        logger.info("Started session %s", self._session_id)
        return self._session_id

    def end_session(self) -> None:
        logger.info("Ended session %s", self._session_id)

    # ---- CRUD ----

    async def create_task(
            self,
            title: str,
            *,
            description: str | None = None,
            priority: TaskPriority | str = TaskPriority.MEDIUM,
            tags: Iterable[str] | None = None,
            task_type: TaskType | str = TaskType.TASK,
            command: str | None = None,
            cwd: str | None = None,
            project: str | None = None,
            conflicts: Iterable[str] | None = None,
            dependencies: Iterable[str] | None = None,
            metadata: dict[str, Any] | None = None,
    ) -> Task:
        now = utc_now()
        task = Task(
            id=str(uuid.uuid4()),
            title=_coerce_field("title", title),
            description=description or None,
            status=TaskStatus.PENDING,
            priority=_coerce_field("priority", priority),
            task_type=_coerce_field("task_type", task_type),
            tags=_id_tuple(tags),
            created_at=now,
            updated_at=now,
            command=command or None,
            cwd=cwd or None,
            project=project or None,
            conflicts=_id_tuple(conflicts),
            dependencies=_id_tuple(dependencies),
            session_id=self._session_id,
            metadata=_coerce_field("metadata", metadata),
        )

        async with self._lock:
            self._tasks[task.id] = task
            self._autosave()

        logger.info("Task created id=%s type=%s command=%s", task.id, task.task_type.value, bool(task.command))
        return task.snapshot()

    async def create_background_task(
            self,
            title: str,
            command: str,
            *,
            description: str | None = None,
            priority: TaskPriority | str = TaskPriority.MEDIUM,
            tags: Iterable[str] | None = None,
            cwd: str | None = None,
            project: str | None = None,
    ) -> Task:
        """Create a background_process task and start it right away."""
        if not command or not command.strip():
            raise InvalidArgumentError("command is required for a background task")
        task = await self.create_task(
            title,
            description=description,
            priority=priority,
            tags=tags,
            task_type=TaskType.BACKGROUND_PROCESS,
            command=command,
            cwd=cwd,
            project=project,
        )
        return await self.start(task.id)

    def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.snapshot() if task is not None else None

    async def update_task(self, task_id: str, **changes: Any) -> Task:
        """
        Apply field changes to a task.

        `id`, `created_at` and `updated_at` are ignored. Rejected: unknown
        fields, status changes out of a terminal state, and moving a running
        task back to pending or in_progress.
        """
        for name in _IMMUTABLE_FIELDS:
            changes.pop(name, None)
        if "type" in changes:
            changes["task_type"] = changes.pop("type")

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidArgumentError(f"Unknown task field(s): {', '.join(sorted(unknown))}")

        async with self._lock:
            task = self._require(task_id)
            values = {name: _coerce_field(name, value) for name, value in changes.items()}

            new_status: TaskStatus | None = values.get("status")
            if new_status is not None and new_status != task.status:
                if task.status.is_terminal:
                    raise InvalidTransitionError(
                        f"Task {task_id} is {task.status.value}; it cannot move to {new_status.value}"
                    )
                if task.status == TaskStatus.RUNNING and not new_status.is_terminal:
                    raise InvalidTransitionError(
                        f"Task {task_id} has a running process; stop it instead of moving it to {new_status.value}"
                    )
                if new_status == TaskStatus.COMPLETED:
                    task.completed_at = utc_now()
                if new_status.is_terminal:
                    self._detach(task_id)

            for name, value in values.items():
                setattr(task, name, value)
            task.touch()
            self._autosave()

        if new_status is not None:
            logger.info("Task %s -> %s", task_id, new_status.value)
        return task.snapshot()

    async def complete_task(self, task_id: str) -> Task:
        return await self.update_task(task_id, status=TaskStatus.COMPLETED)

    async def delete_task(self, task_id: str) -> None:
        async with self._lock:
            self._require(task_id)
            del self._tasks[task_id]
            handle = self._detach(task_id)
            self._autosave()

        if handle is not None and self._supervisor.is_running(handle):
            logger.warning(
                "Task %s deleted while pid=%s is still running; the process is no longer tracked",
                task_id,
                handle.pid,
            )
        logger.info("Task deleted id=%s", task_id)

    def _detach(self, task_id: str) -> ProcessHandle | None:
        return self._handles.pop(task_id, None)

    # ---- lifecycle ----

    async def start(self, task_id: str) -> Task:
        """
        Start a task.

        Order: running conflicts are stopped first, then dependencies that are
        not active are started (recursively), then the task itself.
        """
        return await self._start(task_id, ())

    async def _start(self, task_id: str, chain: tuple[str, ...]) -> Task:
        task = self._require(task_id)
        chain = (*chain, task_id)

        handle = self._handles.get(task_id)
        if handle is not None and self._supervisor.is_running(handle):
            logger.info("Task %s already has a live process pid=%s", task_id, handle.pid)
            return task.snapshot()

        for conflict_id in task.conflicts:
            other = self._tasks.get(conflict_id)
            if conflict_id == task_id or other is None or not other.status.is_active:
                continue
            logger.info("Stopping conflicting task %s before starting %s", conflict_id, task_id)
            try:
                await self.stop(conflict_id)
            except Exception:
                logger.exception("Failed to stop conflicting task %s", conflict_id)
            await asyncio.sleep(self._conflict_settle_delay)

        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None or dep.status.is_active:
                continue
            if dep_id in chain:
                raise DependencyCycleError((*chain, dep_id))
            logger.info("Starting dependency %s of %s", dep_id, task_id)
            await self._start(dep_id, chain)

        # Conflict/dependency handling awaited; the task may be gone by now.
        task = self._require(task_id)

        if not task.command:
            async with self._lock:
                task.status = TaskStatus.IN_PROGRESS
                task.touch()
                self._autosave()
            logger.info("Task %s -> in_progress", task_id)
            return task.snapshot()

        return await self._spawn(task)

    async def _spawn(self, task: Task) -> Task:
        log_path = Path(task.log_file) if task.log_file else self._logs_dir / f"{task.id}.log"

        async with self._lock:
            if self._tasks.get(task.id) is not task:
                raise TaskNotFoundError(task.id)
            sink = await self._open_log(log_path)
            try:
                handle = await self._supervisor.spawn(
                    task.command,
                    task_id=task.id,
                    output=sink,
                    cwd=task.cwd,
                )
            except SpawnError:
                task.status = TaskStatus.FAILED
                task.log_file = str(log_path)
                task.touch()
                try:
                    self._autosave()
                except TaskwardenError:
                    logger.exception("Failed to persist spawn failure of task %s", task.id)
                logger.warning("Task %s -> failed (spawn error)", task.id)
                raise
            finally:
                # The child holds its own copy of the descriptor.
                sink.close()

            self._handles[task.id] = handle
            task.process_id = handle.pid
            task.log_file = str(log_path)
            task.status = TaskStatus.RUNNING
            task.exit_code = None
            task.completed_at = None
            task.metadata["backgroundProcessId"] = handle.id
            task.touch()
            self._autosave()

        logger.info("Task %s -> running pid=%s log=%s", task.id, handle.pid, log_path)
        return task.snapshot()

    async def _open_log(self, path: Path) -> BinaryIO:
        opening = asyncio.ensure_future(asyncio.to_thread(_open_append_sink, path))
        try:
            return await asyncio.wait_for(asyncio.shield(opening), timeout=self._log_open_timeout)
        except TimeoutError as error:
            # The worker thread may still finish the open; nobody will own that file.
            opening.add_done_callback(_close_late_sink)
            raise TaskIOError(f"Timed out opening log file {path}") from error
        except OSError as error:
            raise TaskIOError(f"Cannot open log file {path}: {error}") from error

    async def stop(self, task_id: str) -> Task:
        """
        Stop a task and mark it cancelled without waiting for the process.

        The supervisor sends SIGTERM now and SIGKILL after the grace period.
        Stopping an already finished task changes nothing.
        """
        async with self._lock:
            task = self._require(task_id)
            if task.status.is_terminal:
                return task.snapshot()

            handle = self._detach(task_id)
            if handle is not None:
                self._supervisor.terminate(handle, self._grace_period)

            task.status = TaskStatus.CANCELLED
            task.touch()
            self._autosave()

        logger.info("Task %s -> cancelled", task_id)
        return task.snapshot()

    async def restart(self, task_id: str) -> Task:
        await self.stop(task_id)
        await asyncio.sleep(self._restart_delay)
        return await self.start(task_id)

    async def _on_process_exit(self, handle: ProcessHandle, exit_code: int | None) -> None:
        async with self._lock:
            if self._handles.get(handle.task_id) is not handle:
                logger.debug(
                    "Ignoring exit of detached process pid=%s task_id=%s code=%s",
                    handle.pid,
                    handle.task_id,
                    exit_code,
                )
                return
            del self._handles[handle.task_id]

            task = self._tasks.get(handle.task_id)
            if task is None:
                return

            task.status = TaskStatus.COMPLETED if exit_code == 0 else TaskStatus.FAILED
            task.exit_code = exit_code
            if task.status == TaskStatus.COMPLETED:
                task.completed_at = utc_now()
            task.touch()
            try:
                self._autosave()
            except TaskwardenError:
                logger.exception("Failed to persist exit of task %s", task.id)

        logger.info("Task %s -> %s (exit code %s)", task.id, task.status.value, exit_code)

    # ---- batch / aggregate ----

    async def _batch(self, op: Callable[[str], Awaitable[Any]], ids: Sequence[str]) -> BatchResult:
        result = BatchResult()
        for task_id in ids:
            try:
                await op(task_id)
            except Exception as error:
                logger.warning("Batch %s failed for %s: %s", op.__name__, task_id, error)
                result.failed.append(task_id)
            else:
                result.succeeded.append(task_id)
        return result

    async def batch_start(self, ids: Sequence[str]) -> BatchResult:
        return await self._batch(self.start, ids)

    async def batch_stop(self, ids: Sequence[str]) -> BatchResult:
        return await self._batch(self.stop, ids)

    async def batch_restart(self, ids: Sequence[str]) -> BatchResult:
        return await self._batch(self.restart, ids)

    async def batch_remove(self, ids: Sequence[str]) -> BatchResult:
        return await self._batch(self.delete_task, ids)

    async def batch(self, action: str, ids: Sequence[str]) -> BatchResult:
        ops = {
            "start": self.batch_start,
            "stop": self.batch_stop,
            "restart": self.batch_restart,
            "remove": self.batch_remove,
        }
        op = ops.get((action or "").strip().lower())
        if op is None:
            raise InvalidArgumentError(f"Unknown batch action: {action!r} (use start|stop|restart|remove)")
        return await op(ids)

    async def stop_all(
            self,
            *,
            project: str | None = None,
            task_type: TaskType | str | None = None,
    ) -> int:
        wanted_type = _coerce_field("task_type", task_type) if task_type else None
        targets = [
            t.id
            for t in self._tasks.values()
            if t.status.is_active
            and (project is None or t.project == project)
            and (wanted_type is None or t.task_type == wanted_type)
        ]

        stopped = 0
        for task_id in targets:
            try:
                await self.stop(task_id)
                stopped += 1
            except Exception:
                logger.exception("Failed to stop task %s", task_id)
        return stopped

    async def cleanup(self) -> int:
        """Delete every completed, failed or cancelled task."""
        async with self._lock:
            doomed = [tid for tid, t in self._tasks.items() if t.status.is_terminal]
            for task_id in doomed:
                del self._tasks[task_id]
                self._detach(task_id)
            if doomed:
                self._autosave()

        logger.info("Cleanup removed %d tasks", len(doomed))
        return len(doomed)

    # ---- queries ----

    def list_tasks(
            self,
            *,
            status: TaskStatus | str | None = None,
            priority: TaskPriority | str | None = None,
            task_type: TaskType | str | None = None,
            tags: Iterable[str] | None = None,
            project: str | None = None,
            session_id: str | None = None,
    ) -> list[Task]:
        """Tasks matching every given filter, most recently updated first."""
        want_status = _coerce_field("status", status) if status else None
        want_priority = _coerce_field("priority", priority) if priority else None
        want_type = _coerce_field("task_type", task_type) if task_type else None
        want_tags = set(_id_tuple(tags))

        out: list[Task] = []
        for t in self._tasks.values():
            if want_status is not None and t.status != want_status:
                continue
            if want_priority is not None and t.priority != want_priority:
                continue
            if want_type is not None and t.task_type != want_type:
                continue
            if want_tags and not want_tags.intersection(t.tags):
                continue
            if project is not None and t.project != project:
                continue
            if session_id is not None and t.session_id != session_id:
                continue
            out.append(t.snapshot())

        out.sort(key=lambda t: t.updated_at, reverse=True)
        return out

    def list_background_tasks(self) -> list[Task]:
        return self.list_tasks(task_type=TaskType.BACKGROUND_PROCESS)

    def find_by_pid(self, pid: int) -> Task | None:
        for t in self._tasks.values():
            if t.process_id == pid:
                return t.snapshot()
        return None

    def find_by_command(self, pattern: str) -> list[Task]:
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as error:
            raise InvalidArgumentError(f"Invalid command pattern {pattern!r}: {error}") from error
        return [t.snapshot() for t in self._tasks.values() if t.command and regex.search(t.command)]

    def suggest_actions(self, command: str | None) -> list[str]:
        return _suggest_actions([t.snapshot() for t in self._tasks.values()], command)

    def statistics(self) -> dict[str, int]:
        counts = {s.value: 0 for s in TaskStatus}
        for t in self._tasks.values():
            counts[t.status.value] += 1
        counts["total"] = len(self._tasks)
        return counts

    def log_path(self, task_id: str) -> Path:
        task = self._require(task_id)
        return Path(task.log_file) if task.log_file else self._logs_dir / f"{task_id}.log"

    async def read_log_tail(self, task_id: str, lines: int = DEFAULT_LOG_TAIL_LINES) -> str | None:
        """Last `lines` lines of the task's output, or None when there are no logs yet."""
        path = self.log_path(task_id)
        return await asyncio.to_thread(read_tail, path, lines)

    # ---- export / import ----

    async def export_all(self, destination: str | Path) -> int:
        tasks = [t.snapshot() for t in self._tasks.values()]
        await asyncio.to_thread(write_tasks_document, destination, tasks)
        logger.info("Exported %d tasks to %s", len(tasks), destination)
        return len(tasks)

    async def import_all(self, source: str | Path) -> int:
        """Insert tasks from an exported file; existing ids are never overwritten."""
        incoming = await asyncio.to_thread(read_tasks_document, source)

        async with self._lock:
            imported = 0
            for task in incoming:
                if task.id in self._tasks:
                    continue
                self._tasks[task.id] = task
                imported += 1
            if imported:
                self._autosave()

        logger.info("Imported %d of %d tasks from %s", imported, len(incoming), source)
        return imported
