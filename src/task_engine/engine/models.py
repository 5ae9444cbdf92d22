"""Domain models for the task queue, worker registry and progress channel."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    PREPARING = "preparing"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def active(cls) -> tuple[TaskStatus, ...]:
        """Statuses of tasks that are still in flight."""

        return (cls.QUEUED, cls.PREPARING, cls.RUNNING)


TERMINAL_STATUSES = frozenset({TaskStatus.FINISHED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class TaskPriority(str, Enum):
    """Task priority tiers; lower weight is claimed first."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHTS[self]


PRIORITY_WEIGHTS = {
    TaskPriority.HIGH: 1,
    TaskPriority.NORMAL: 5,
    TaskPriority.LOW: 10,
}


class ScheduleType(str, Enum):
    MANUAL = "manual"
    ONCE = "once"
    PERIODIC = "periodic"
    REGULAR = "regular"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    identifier: str
    action: str
    meta: dict[str, Any] = field(default_factory=dict)
    priority: TaskPriority = TaskPriority.NORMAL
    started_by: int | None = None
    start_at: datetime | None = None
    max_attempts: int = 3
    attempts: int = 0
    message: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for driver, services and CLI."""

    task_id: int
    identifier: str
    action: str
    status: TaskStatus
    message: str | None
    started_by: int | None
    meta: dict[str, Any]
    result: Any
    start_at: datetime | None
    started_at: datetime | None
    finished_at: datetime | None
    attempts: int
    max_attempts: int
    priority: TaskPriority
    progress: int
    created_at: datetime
    updated_at: datetime

    def can_retry(self) -> bool:
        """A failed task can be re-enqueued while attempts remain."""

        return self.status == TaskStatus.FAILED and self.attempts < self.max_attempts

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: int
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class WorkerView:
    """Stored worker registration."""

    worker_id: int
    identifier: str
    scope: str
    implementation: str
    active: bool
    position: int
    settings: dict[str, Any]
    hidden: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class WorkerListing:
    """Worker row decorated with task counters for administration views."""

    worker: WorkerView
    title: str
    loadable: bool
    task_counts: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ScheduleSpec:
    """Worker schedule descriptor stored under the ``schedule`` settings key."""

    type: ScheduleType = ScheduleType.MANUAL
    enabled: bool = False
    once_at: str | None = None
    time: str | None = None
    frequency: str = "hourly"
    start_time: str | None = None
    end_time: str | None = None
    interval: str = "hourly"

    @classmethod
    def from_settings(cls, raw: object) -> ScheduleSpec:
        if not isinstance(raw, dict):
            return cls()
        try:
            schedule_type = ScheduleType(str(raw.get("type") or ScheduleType.MANUAL.value))
        except ValueError:
            schedule_type = ScheduleType.MANUAL
        return cls(
            type=schedule_type,
            enabled=bool(raw.get("enabled", False)),
            once_at=raw.get("datetime") or None,
            time=raw.get("time") or None,
            frequency=str(raw.get("frequency") or "hourly"),
            start_time=raw.get("start_time") or None,
            end_time=raw.get("end_time") or None,
            interval=str(raw.get("interval") or "hourly"),
        )

    @property
    def is_recurring(self) -> bool:
        return self.type in {ScheduleType.PERIODIC, ScheduleType.REGULAR}


@dataclass(slots=True)
class ProgressSnapshot:
    """Parsed last record of a task progress log."""

    task_id: int
    status: str
    progress: int
    processed: int
    total: int
    eta: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "status": self.status,
            "progress": self.progress,
            "processed": self.processed,
            "total": self.total,
            "eta": self.eta,
            "message": self.message,
        }


@dataclass(slots=True)
class TaskResult:
    """Stored result of a finished task, optionally backed by a file artifact."""

    task_id: int
    value: Any
    path: str | None = None
    filename: str | None = None
    content_type: str | None = None

    @property
    def is_file(self) -> bool:
        return self.path is not None


class LogLevel(str, Enum):
    """Severity of a per-task log entry."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def logging_level(self) -> int:
        return LOGGING_LEVELS[self]

    @classmethod
    def errors(cls) -> tuple[LogLevel, ...]:
        return (cls.ERROR, cls.CRITICAL)


LOGGING_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}


@dataclass(slots=True)
class TaskLogEntry:
    """One leveled log line attached to a task."""

    log_id: int
    task_id: int
    level: LogLevel
    message: str
    context: dict[str, Any]
    created_at: datetime

    def format_line(self, *, include_trace: bool = True) -> str:
        """``[timestamp] [LEVEL] message {context}``, as written by ``export``."""

        context = self.context
        if not include_trace:
            context = {key: value for key, value in context.items() if key != "trace"}
        line = f"[{self.created_at.isoformat()}] [{self.level.value.upper()}] {self.message}"
        if context:
            line += " " + json.dumps(context, ensure_ascii=False, sort_keys=True)
        return line


@dataclass(slots=True)
class WorkerMetrics:
    """Execution statistics of one worker over a time window."""

    identifier: str
    total_tasks: int = 0
    finished: int = 0
    failed: int = 0
    cancelled: int = 0
    total_execution_seconds: float = 0.0
    timed_tasks: int = 0
    last_execution: datetime | None = None

    @property
    def success_rate(self) -> float:
        """Finished tasks as a percentage of all tasks in the window."""

        return round(self.finished / self.total_tasks * 100, 2) if self.total_tasks else 0.0

    @property
    def error_rate(self) -> float:
        return round(self.failed / self.total_tasks * 100, 2) if self.total_tasks else 0.0

    @property
    def average_duration(self) -> float:
        if not self.timed_tasks:
            return 0.0
        return round(self.total_execution_seconds / self.timed_tasks, 3)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "total_tasks": self.total_tasks,
            "finished": self.finished,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "average_duration": self.average_duration,
            "total_execution_time": round(self.total_execution_seconds, 3),
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
        }
