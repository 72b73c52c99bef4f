# src/taskwarden/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    pending -> in_progress | running -> completed | failed | cancelled

    - "in_progress" is used by tasks without a command (no process involved).
    - "running" means a supervised process was spawned for the task.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskPriority:
        try:
            return cls(raw) if raw else cls.MEDIUM
        except ValueError:
            return cls.MEDIUM


class TaskType(StrEnum):
    TASK = "task"
    BACKGROUND_PROCESS = "background_process"
    BUILD = "build"
    SERVE = "serve"
    WATCH = "watch"
    TEST = "test"
    CUSTOM = "custom"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskType:
        try:
            return cls(raw) if raw else cls.TASK
        except ValueError:
            return cls.CUSTOM


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    # "Z" suffix is what JS Date.toJSON() writes.
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _format_ts(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _str_tuple(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, str):
        return (raw,)
    return tuple(str(x) for x in raw)


@dataclass(slots=True)
class Task:
    id: str
    title: str
    status: TaskStatus
    priority: TaskPriority
    task_type: TaskType
    created_at: datetime
    updated_at: datetime

    description: str | None = None
    tags: tuple[str, ...] = ()

    command: str | None = None
    cwd: str | None = None
    process_id: int | None = None
    exit_code: int | None = None
    log_file: str | None = None

    conflicts: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()

    project: str | None = None
    session_id: str | None = None
    completed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def touch(self) -> None:
        """Bump updated_at, strictly increasing even within one clock tick."""
        now = utc_now()
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now

    def snapshot(self) -> Task:
        """Detached copy handed out to callers; the registry keeps the original."""
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> dict[str, Any]:
        """JSON document shape (camelCase keys, ISO-8601 timestamps)."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "type": self.task_type.value,
            "tags": list(self.tags),
            "createdAt": _format_ts(self.created_at),
            "updatedAt": _format_ts(self.updated_at),
            "completedAt": _format_ts(self.completed_at),
            "sessionId": self.session_id,
            "command": self.command,
            "cwd": self.cwd,
            "processId": self.process_id,
            "exitCode": self.exit_code,
            "logFile": self.log_file,
            "project": self.project,
            "conflicts": list(self.conflicts),
            "dependencies": list(self.dependencies),
            "metadata": dict(self.metadata),
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """
        Build a Task from its JSON document shape.

        Raises KeyError/ValueError/TypeError on malformed input; the store turns
        those into StorageCorruptError.
        """
        created_at = _parse_ts(data["createdAt"])
        if created_at is None:
            raise ValueError("createdAt is required")
        updated_at = _parse_ts(data.get("updatedAt")) or created_at

        meta = data.get("metadata") or {}
        if not isinstance(meta, dict):
            raise TypeError("metadata must be an object")

        pid = data.get("processId")
        exit_code = data.get("exitCode")

        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            description=data.get("description"),
            status=TaskStatus.from_db(data.get("status")),
            priority=TaskPriority.from_db(data.get("priority")),
            task_type=TaskType.from_db(data.get("type")),
            tags=_str_tuple(data.get("tags")),
            created_at=created_at,
            updated_at=updated_at,
            completed_at=_parse_ts(data.get("completedAt")),
            session_id=data.get("sessionId"),
            command=data.get("command") or None,
            cwd=data.get("cwd") or None,
            process_id=int(pid) if pid is not None else None,
            exit_code=int(exit_code) if exit_code is not None else None,
            log_file=data.get("logFile") or None,
            project=data.get("project") or None,
            conflicts=_str_tuple(data.get("conflicts")),
            dependencies=_str_tuple(data.get("dependencies")),
            metadata=meta,
        )


@dataclass(slots=True, frozen=True)
class BatchResult:
    """Partition of a batch input; input order is preserved within each list."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
