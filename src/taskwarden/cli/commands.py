# src/taskwarden/cli/commands.py

from __future__ import annotations

import contextlib
import inspect
import logging
import shlex
from collections.abc import Awaitable, Callable
from typing import cast

from ..core.state import AppState
from ..errors import InvalidArgumentError, TaskNotFoundError, TaskwardenError
from ..processes.process_models import ProcessStatus
from ..tasks.task_models import Task

CommandEmitter = Callable[[str], None]
CommandHandler2 = Callable[[AppState, list[str]], Awaitable[str]]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], Awaitable[str]]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Slash-command registry used by the console connector (/help, /start, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        try:
            parts = shlex.split(line[1:])
        except ValueError as e:
            return f"Cannot parse command: {e}"
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        try:
            if nparams >= 3:
                h3 = cast(CommandHandler3, handler)
                return await h3(state, args, emit)
            h2 = cast(CommandHandler2, handler)
            return await h2(state, args)
        except TaskwardenError as e:
            logger.debug("/%s failed: %s", name, e)
            return f"Error: {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- helpers ----


def _split_args(args: list[str]) -> tuple[list[str], dict[str, str]]:
    """Separate positional arguments from key=value options."""
    positional: list[str] = []
    options: dict[str, str] = {}
    for arg in args:
        key, sep, value = arg.partition("=")
        if sep and key and key.isidentifier():
            options[key.lower()] = value
        else:
            positional.append(arg)
    return positional, options


def _resolve_id(state: AppState, raw: str) -> str:
    """Accept a full task id or a unique prefix of one (as shown by /list)."""
    if state.engine.get_task(raw) is not None:
        return raw
    matches = [t.id for t in state.engine.list_tasks() if t.id.startswith(raw)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise InvalidArgumentError(f"Ambiguous task id prefix {raw!r} ({len(matches)} matches)")
    raise TaskNotFoundError(raw)


def _resolve_ref(state: AppState, raw: str) -> str:
    """Like _resolve_id, but unknown or ambiguous ids are passed through unchanged."""
    try:
        return _resolve_id(state, raw)
    except TaskwardenError:
        return raw


def _need_id(state: AppState, args: list[str], usage: str) -> str:
    if not args:
        raise InvalidArgumentError(f"Usage: {usage}")
    return _resolve_id(state, args[0])


def _task_line(t: Task) -> str:
    extra = f" pid={t.process_id}" if t.process_id else ""
    return f"[{t.id[:8]}] {t.title} ({t.status.value}, {t.priority.value}, {t.task_type.value}){extra}"


def _task_detail(t: Task) -> str:
    lines = [
        f"ID: {t.id}",
        f"Title: {t.title}",
        f"Status: {t.status.value}",
        f"Priority: {t.priority.value}",
        f"Type: {t.task_type.value}",
    ]
    optional = [
        ("Description", t.description),
        ("Tags", ", ".join(t.tags)),
        ("Project", t.project),
        ("Command", t.command),
        ("Cwd", t.cwd),
        ("PID", t.process_id),
        ("Exit code", t.exit_code),
        ("Log file", t.log_file),
        ("Conflicts", ", ".join(t.conflicts)),
        ("Dependencies", ", ".join(t.dependencies)),
        ("Session", t.session_id),
    ]
    lines.extend(f"{label}: {value}" for label, value in optional if value not in (None, ""))
    lines.append(f"Created: {t.created_at.astimezone():%Y-%m-%d %H:%M:%S}")
    lines.append(f"Updated: {t.updated_at.astimezone():%Y-%m-%d %H:%M:%S}")
    if t.completed_at:
        lines.append(f"Completed: {t.completed_at.astimezone():%Y-%m-%d %H:%M:%S}")
    return "\n".join(lines)


# ---- handlers ----


async def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


async def cmd_list(state: AppState, args: list[str]) -> str:
    """
    /list                         -> all tasks
    /list status=running tags=a,b -> filtered
    /list session                 -> tasks of the current session
    """
    positional, opts = _split_args(args)
    tasks = state.engine.list_tasks(
        status=opts.get("status"),
        priority=opts.get("priority"),
        task_type=opts.get("type"),
        tags=opts.get("tags"),
        project=opts.get("project"),
        session_id=state.engine.session_id if "session" in positional else None,
    )
    if not tasks:
        return "No tasks."
    return "\n".join([f"{len(tasks)} task(s):"] + [_task_line(t) for t in tasks])


async def cmd_show(state: AppState, args: list[str]) -> str:
    task_id = _need_id(state, args, "/show <id>")
    task = state.engine.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return _task_detail(task)


async def cmd_create(state: AppState, args: list[str]) -> str:
    """
    /create "title" [cmd="npm run dev"] [type=serve] [priority=high] [tags=a,b]
            [desc=...] [cwd=...] [project=...] [conflicts=id,id] [deps=id,id]
    """
    positional, opts = _split_args(args)
    if not positional:
        raise InvalidArgumentError('Usage: /create "title" [cmd=...] [type=...] [key=value ...]')

    task = await state.engine.create_task(
        " ".join(positional),
        description=opts.get("desc"),
        priority=opts.get("priority") or "medium",
        tags=opts.get("tags"),
        task_type=opts.get("type") or "task",
        command=opts.get("cmd"),
        cwd=opts.get("cwd"),
        project=opts.get("project"),
        conflicts=[_resolve_ref(state, c) for c in (opts.get("conflicts") or "").split(",") if c],
        dependencies=[_resolve_ref(state, d) for d in (opts.get("deps") or "").split(",") if d],
    )
    return f"Task created.\n{_task_line(task)}"


async def cmd_update(state: AppState, args: list[str]) -> str:
    positional, opts = _split_args(args)
    task_id = _need_id(state, positional, "/update <id> key=value ...")
    if not opts:
        raise InvalidArgumentError("Nothing to update. Use key=value pairs (title, status, priority, ...).")

    aliases = {"desc": "description", "cmd": "command", "deps": "dependencies", "type": "task_type"}
    changes = {aliases.get(k, k): v for k, v in opts.items()}
    task = await state.engine.update_task(task_id, **changes)
    return f"Task updated.\n{_task_line(task)}"


async def cmd_start(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    task_id = _need_id(state, args, "/start <id>")
    if emit:
        with contextlib.suppress(Exception):
            emit(f"Starting {task_id[:8]} (conflicts and dependencies first)...")
    task = await state.engine.start(task_id)
    return f"Started.\n{_task_line(task)}"


async def cmd_stop(state: AppState, args: list[str]) -> str:
    task_id = _need_id(state, args, "/stop <id>")
    task = await state.engine.stop(task_id)
    return f"Stopped.\n{_task_line(task)}"


async def cmd_restart(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    task_id = _need_id(state, args, "/restart <id>")
    if emit:
        with contextlib.suppress(Exception):
            emit(f"Restarting {task_id[:8]}...")
    task = await state.engine.restart(task_id)
    return f"Restarted.\n{_task_line(task)}"


async def cmd_done(state: AppState, args: list[str]) -> str:
    task_id = _need_id(state, args, "/done <id>")
    task = await state.engine.complete_task(task_id)
    return f"Completed.\n{_task_line(task)}"


async def cmd_rm(state: AppState, args: list[str]) -> str:
    task_id = _need_id(state, args, "/rm <id>")
    await state.engine.delete_task(task_id)
    return f"Deleted {task_id}."


async def cmd_batch(state: AppState, args: list[str]) -> str:
    """/batch <start|stop|restart|remove> <id> [<id> ...]"""
    if len(args) < 2:
        raise InvalidArgumentError("Usage: /batch <start|stop|restart|remove> <id> [<id> ...]")

    # Unknown ids still go through the batch so they show up under "failed".
    ids = [_resolve_ref(state, raw) for raw in args[1:]]

    result = await state.engine.batch(args[0], ids)
    return (
        f"Succeeded ({len(result.succeeded)}): {', '.join(result.succeeded) or '-'}\n"
        f"Failed ({len(result.failed)}): {', '.join(result.failed) or '-'}"
    )


async def cmd_stopall(state: AppState, args: list[str]) -> str:
    _, opts = _split_args(args)
    n = await state.engine.stop_all(project=opts.get("project"), task_type=opts.get("type"))
    return f"Stopped {n} task(s)."


async def cmd_cleanup(state: AppState, args: list[str]) -> str:
    n = await state.engine.cleanup()
    return f"Removed {n} finished task(s)."


async def cmd_logs(state: AppState, args: list[str]) -> str:
    task_id = _need_id(state, args, "/logs <id> [lines]")
    lines = int(getattr(state.settings, "log_tail_lines", 50))
    if len(args) > 1:
        try:
            lines = int(args[1])
        except ValueError as e:
            raise InvalidArgumentError(f"lines must be a number, got {args[1]!r}") from e

    text = await state.engine.read_log_tail(task_id, lines)
    if text is None:
        return "No logs available."
    return text.rstrip("\n") or "(log is empty)"


async def cmd_find(state: AppState, args: list[str]) -> str:
    """/find pid=<pid> | /find cmd=<regex>"""
    _, opts = _split_args(args)
    if "pid" in opts:
        try:
            pid = int(opts["pid"])
        except ValueError as e:
            raise InvalidArgumentError(f"pid must be a number, got {opts['pid']!r}") from e
        task = state.engine.find_by_pid(pid)
        return _task_line(task) if task else f"No task with pid {pid}."
    if "cmd" in opts:
        tasks = state.engine.find_by_command(opts["cmd"])
        if not tasks:
            return "No matching tasks."
        return "\n".join(_task_line(t) for t in tasks)
    raise InvalidArgumentError("Usage: /find pid=<pid> | /find cmd=<regex>")


async def cmd_suggest(state: AppState, args: list[str]) -> str:
    suggestions = state.engine.suggest_actions(" ".join(args))
    return "\n".join(suggestions) if suggestions else "No suggestions."


async def cmd_export(state: AppState, args: list[str]) -> str:
    if not args:
        raise InvalidArgumentError("Usage: /export <path>")
    n = await state.engine.export_all(args[0])
    return f"Exported {n} task(s) to {args[0]}."


async def cmd_import(state: AppState, args: list[str]) -> str:
    if not args:
        raise InvalidArgumentError("Usage: /import <path>")
    n = await state.engine.import_all(args[0])
    return f"Imported {n} new task(s) from {args[0]}."


async def cmd_session(state: AppState, args: list[str]) -> str:
    """
    /session      -> show current session id
    /session new  -> start a new session
    """
    if args and args[0].lower() == "new":
        state.engine.end_session()
        return f"New session: {state.engine.start_session()}"
    return f"Current session: {state.engine.session_id}"


async def cmd_ps(state: AppState, args: list[str]) -> str:
    """
    Supervised processes of this run:
    /ps          -> all
    /ps running  -> live ones only
    /ps history  -> last 10 finished
    /ps clean    -> forget finished records
    """
    mode = args[0].lower() if args else ""
    if mode == "clean":
        return f"Forgot {state.supervisor.cleanup_processes()} finished process record(s)."
    if mode == "history":
        procs = state.supervisor.process_history()
    else:
        procs = state.supervisor.list_processes(ProcessStatus.RUNNING if mode == "running" else None)
    if not procs:
        return "No supervised processes."
    lines = [f"{len(procs)} process(es):"]
    for p in procs:
        code = f" exit={p.exit_code}" if p.exit_code is not None else ""
        lines.append(f"  pid={p.process_id} task={p.task_id[:8]} {p.status.value}{code}  {p.command}")
    return "\n".join(lines)


async def cmd_stats(state: AppState, args: list[str]) -> str:
    tasks = state.engine.statistics()
    procs = state.supervisor.statistics()
    task_part = ", ".join(f"{k}={v}" for k, v in tasks.items())
    proc_part = ", ".join(f"{k}={v}" for k, v in procs.items())
    return f"Tasks: {task_part}\nProcesses: {proc_part}"


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("list", cmd_list, help_text="List tasks: /list [status=] [type=] [tags=a,b] [project=] [session].", aliases=["ls"])
registry.register("show", cmd_show, help_text="Show task details: /show <id>.")
registry.register("create", cmd_create, help_text='Create a task: /create "title" [cmd=] [type=] [conflicts=] [deps=].', aliases=["new"])
registry.register("update", cmd_update, help_text="Update fields: /update <id> key=value ...")
registry.register("start", cmd_start, help_text="Start a task (stops conflicts, starts dependencies).")
registry.register("stop", cmd_stop, help_text="Stop a task (SIGTERM, SIGKILL after the grace period).")
registry.register("restart", cmd_restart, help_text="Stop, wait, start again.")
registry.register("done", cmd_done, help_text="Mark a task completed.", aliases=["complete"])
registry.register("rm", cmd_rm, help_text="Delete a task.", aliases=["delete"])
registry.register("batch", cmd_batch, help_text="Apply start|stop|restart|remove to several ids.")
registry.register("stopall", cmd_stopall, help_text="Stop every active task: /stopall [project=] [type=].")
registry.register("cleanup", cmd_cleanup, help_text="Delete completed, failed and cancelled tasks.")
registry.register("logs", cmd_logs, help_text="Tail a task's output: /logs <id> [lines].")
registry.register("find", cmd_find, help_text="Find tasks: /find pid=<pid> | /find cmd=<regex>.")
registry.register("suggest", cmd_suggest, help_text="Hints before running a command: /suggest <command>.")
registry.register("export", cmd_export, help_text="Export all tasks to a JSON file.")
registry.register("import", cmd_import, help_text="Import tasks from a JSON file (existing ids are kept).")
registry.register("session", cmd_session, help_text="Show the session id or start a new one: /session [new].")
registry.register("ps", cmd_ps, help_text="Supervised processes: /ps [running|history|clean].", aliases=["bashes"])
registry.register("stats", cmd_stats, help_text="Task and process counters.")
