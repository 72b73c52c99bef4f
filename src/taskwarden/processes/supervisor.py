# src/taskwarden/processes/supervisor.py

"""
Process supervisor.

Owns every live child process started on behalf of a task:
- spawns shell commands detached into their own session/process group,
  with stdout+stderr appended to a caller-provided sink,
- terminates them with SIGTERM -> SIGKILL escalation after a grace period,
- watches each child and emits exactly one exit event per process.

Nothing outside this module holds an asyncio Process object; callers only see
ProcessHandle values.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import subprocess
import uuid
from collections.abc import Iterable
from typing import BinaryIO

from ..core.ports import ExitListener
from ..errors import SpawnError, TaskNotFoundError
from ..tasks.task_api import read_tail
from ..tasks.task_models import utc_now
from .process_models import BackgroundProcess, ProcessHandle, ProcessStatus

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_SECONDS = 5.0
OUTPUT_TAIL_LINES = 20

_POSIX = os.name != "nt"


class ProcessSupervisor:
    def __init__(self, *, grace_period: float = DEFAULT_GRACE_PERIOD_SECONDS) -> None:
        self._grace_period = max(0.0, float(grace_period))

        self._processes: dict[str, BackgroundProcess] = {}
        self._handles: dict[str, ProcessHandle] = {}
        self._live: dict[str, asyncio.subprocess.Process] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._kill_timers: dict[str, asyncio.TimerHandle] = {}
        self._listeners: list[ExitListener] = []

    # ---- events ----

    def add_exit_listener(self, listener: ExitListener) -> None:
        self._listeners.append(listener)

    def remove_exit_listener(self, listener: ExitListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    # ---- spawn / signal ----

    async def spawn(
            self,
            command: str,
            *,
            task_id: str,
            output: BinaryIO,
            cwd: str | None = None,
    ) -> ProcessHandle:
        """
        Start `command` through the shell with stdout/stderr appended to `output`.

        The child gets its own session so signals reach the whole process group
        (the shell and whatever it started).
        """
        if not command or not command.strip():
            raise SpawnError("Command is empty")

        kwargs: dict[str, object] = {}
        if _POSIX:
            kwargs["start_new_session"] = True

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd or None,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
                **kwargs,
            )
        except OSError as error:
            raise SpawnError(f"Failed to start process for task {task_id}: {error}") from error

        sink_name = getattr(output, "name", None)
        handle = ProcessHandle(id=uuid.uuid4().hex, task_id=task_id, pid=proc.pid)
        self._handles[handle.id] = handle
        self._live[handle.id] = proc
        self._processes[handle.id] = BackgroundProcess(
            id=handle.id,
            task_id=task_id,
            process_id=proc.pid,
            command=command,
            status=ProcessStatus.RUNNING,
            started_at=utc_now(),
            log_file=sink_name if isinstance(sink_name, str) else None,
        )
        self._watchers[handle.id] = asyncio.create_task(
            self._watch(handle, proc), name=f"taskwarden-watch-{handle.pid}"
        )
        logger.info("Spawned pid=%s task_id=%s handle=%s", proc.pid, task_id, handle.id)
        return handle

    def is_running(self, handle: ProcessHandle) -> bool:
        return handle.id in self._live

    def terminate(self, handle: ProcessHandle, grace_period: float | None = None) -> bool:
        """
        Send SIGTERM now and schedule SIGKILL after the grace period.

        Returns immediately. Returns False if the process already exited.
        """
        proc = self._live.get(handle.id)
        if proc is None:
            return False

        grace = self._grace_period if grace_period is None else max(0.0, float(grace_period))
        logger.info("Terminating pid=%s task_id=%s grace=%.1fs", handle.pid, handle.task_id, grace)

        if not self._send_signal(proc, signal.SIGTERM):
            return False

        if handle.id not in self._kill_timers:
            loop = asyncio.get_running_loop()
            self._kill_timers[handle.id] = loop.call_later(grace, self._force_kill, handle.id)
        return True

    def _force_kill(self, handle_id: str) -> None:
        self._kill_timers.pop(handle_id, None)
        proc = self._live.get(handle_id)
        if proc is None:
            # Exited within the grace period.
            return
        logger.warning("Grace period elapsed, killing pid=%s", proc.pid)
        self._send_signal(proc, signal.SIGKILL if _POSIX else signal.SIGTERM)

    @staticmethod
    def _send_signal(proc: asyncio.subprocess.Process, sig: int) -> bool:
        try:
            if _POSIX:
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
            return True
        except ProcessLookupError:
            logger.debug("pid=%s already gone (signal %s)", proc.pid, sig)
            return False
        except OSError:
            logger.exception("Failed to send signal %s to pid=%s", sig, proc.pid)
            return False

    # ---- exit handling ----

    async def _watch(self, handle: ProcessHandle, proc: asyncio.subprocess.Process) -> None:
        exit_code: int | None
        try:
            exit_code = await proc.wait()
        except Exception:
            logger.exception("Waiting for pid=%s failed", handle.pid)
            exit_code = None

        timer = self._kill_timers.pop(handle.id, None)
        if timer is not None:
            timer.cancel()
        self._live.pop(handle.id, None)

        record = self._processes.get(handle.id)
        if record is not None:
            record.status = ProcessStatus.COMPLETED if exit_code == 0 else ProcessStatus.FAILED
            record.exit_code = exit_code
            record.finished_at = utc_now()
            if record.log_file:
                try:
                    record.output = await asyncio.to_thread(read_tail, record.log_file, OUTPUT_TAIL_LINES)
                except Exception:
                    logger.debug("Could not capture output tail for pid=%s", handle.pid, exc_info=True)

        logger.info("Process exited pid=%s task_id=%s code=%s", handle.pid, handle.task_id, exit_code)

        for listener in list(self._listeners):
            try:
                await listener(handle, exit_code)
            except Exception:
                logger.exception("Exit listener failed pid=%s task_id=%s", handle.pid, handle.task_id)

        self._watchers.pop(handle.id, None)

    # ---- records ----

    def get_process(self, process_id: str) -> BackgroundProcess | None:
        return self._processes.get(process_id)

    def get_handle(self, process_id: str) -> ProcessHandle | None:
        return self._handles.get(process_id)

    def list_processes(self, status: ProcessStatus | None = None) -> list[BackgroundProcess]:
        procs: Iterable[BackgroundProcess] = self._processes.values()
        if status is not None:
            procs = [p for p in procs if p.status == status]
        return sorted(procs, key=lambda p: p.started_at, reverse=True)

    def process_history(self, limit: int = 10) -> list[BackgroundProcess]:
        finished = [p for p in self._processes.values() if p.status != ProcessStatus.RUNNING]
        finished.sort(key=lambda p: p.started_at, reverse=True)
        return finished[: max(0, int(limit))]

    def kill_process(self, process_id: str, grace_period: float | None = None) -> bool:
        handle = self._handles.get(process_id)
        if handle is None:
            raise TaskNotFoundError(process_id)
        return self.terminate(handle, grace_period)

    def kill_all(self, grace_period: float | None = None) -> int:
        killed = 0
        for handle_id in list(self._live):
            try:
                if self.terminate(self._handles[handle_id], grace_period):
                    killed += 1
            except Exception:
                logger.exception("Failed to kill process handle=%s", handle_id)
        return killed

    def cleanup_processes(self) -> int:
        """Drop every record whose process is no longer running."""
        stale = [pid for pid, p in self._processes.items() if p.status != ProcessStatus.RUNNING]
        for pid in stale:
            del self._processes[pid]
            self._handles.pop(pid, None)
        return len(stale)

    def statistics(self) -> dict[str, int]:
        procs = list(self._processes.values())
        return {
            "running": sum(1 for p in procs if p.status == ProcessStatus.RUNNING),
            "completed": sum(1 for p in procs if p.status == ProcessStatus.COMPLETED),
            "failed": sum(1 for p in procs if p.status == ProcessStatus.FAILED),
            "total": len(procs),
        }

    async def aclose(self, grace_period: float | None = None) -> None:
        """Terminate every live process and wait for their exit events."""
        grace = self._grace_period if grace_period is None else max(0.0, float(grace_period))
        self.kill_all(grace)
        watchers = list(self._watchers.values())
        if not watchers:
            return
        _done, pending = await asyncio.wait(watchers, timeout=grace + 2.0)
        for w in pending:
            logger.warning("Watcher did not finish in time: %s", w.get_name())
            w.cancel()
