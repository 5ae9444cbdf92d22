"""Worker capability contract, action dispatch table and handler outcomes."""

from __future__ import annotations

import html
import inspect
import re
import traceback
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

from task_engine.engine.errors import SecurityViolation
from task_engine.engine.models import ScheduleSpec, ScheduleType, TaskView
from task_engine.storage.sqlmodel_models import DEFAULT_WORKER_SCOPE

if TYPE_CHECKING:
    from task_engine.engine.progress import ProgressTracker
    from task_engine.engine.repository import TaskRepository

ACTION_ATTRIBUTE = "__task_action__"
ONCE_TOLERANCE_SECONDS = 30
_ACTION_SPLIT_RE = re.compile(r"[-_\s]+")

ActionHandler = Callable[["ActionContext"], Any]


@runtime_checkable
class WorkerContract(Protocol):
    """Capabilities every registered worker must expose."""

    def identifier(self) -> str: ...

    def scope(self) -> str: ...

    def icon(self) -> str: ...

    def title(self) -> str: ...

    def description(self) -> str: ...

    def render_widget(self) -> str: ...

    def settings(self) -> dict[str, Any]: ...

    def actions(self) -> dict[str, ActionHandler]: ...

    def schedule(self) -> ScheduleSpec: ...

    def should_run_now(self, now: datetime) -> bool: ...


def satisfies_contract(candidate: object) -> bool:
    return isinstance(candidate, WorkerContract)


def is_concrete_worker_type(candidate: object) -> bool:
    """True for non-abstract classes whose instances can satisfy the contract."""

    if not inspect.isclass(candidate) or inspect.isabstract(candidate):
        return False
    required = ("identifier", "actions", "schedule", "should_run_now", "render_widget")
    return all(callable(getattr(candidate, name, None)) for name in required)


def handler_name(action: str) -> str:
    """Canonical handler key for an action name: ``sync_stock`` -> ``SyncStock``."""

    words = [word for word in _ACTION_SPLIT_RE.split(action.strip().lower()) if word]
    return "".join(word[:1].upper() + word[1:] for word in words)


def action(name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Register a worker method as the handler of action ``name``."""

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        setattr(func, ACTION_ATTRIBUTE, name)
        return func

    return decorator


class ActionFailure(str, Enum):
    """Closed set of reasons a dispatched action did not succeed."""

    UNKNOWN_ACTION = "unknown_action"
    HANDLER_ERROR = "handler_error"
    SECURITY_VIOLATION = "security_violation"
    REPORTED = "reported"


@dataclass(slots=True, frozen=True)
class ActionOutcome:
    """Result of one handler invocation."""

    ok: bool
    reason: ActionFailure | None = None
    detail: str = ""
    location: str | None = None
    finalized: bool = False
    trace: str | None = None

    @classmethod
    def success(cls, *, finalized: bool = False) -> ActionOutcome:
        return cls(ok=True, finalized=finalized)

    @classmethod
    def failure(  # noqa: PLR0913
        cls,
        reason: ActionFailure,
        detail: str,
        *,
        location: str | None = None,
        finalized: bool = False,
        trace: str | None = None,
    ) -> ActionOutcome:
        return cls(
            ok=False,
            reason=reason,
            detail=detail,
            location=location,
            finalized=finalized,
            trace=trace,
        )

    @classmethod
    def from_exception(cls, exc: BaseException, *, finalized: bool = False) -> ActionOutcome:
        """Handler error outcome carrying the raise location and traceback."""

        detail = str(exc) or type(exc).__name__
        if not isinstance(exc, Exception):
            detail = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        return cls.failure(
            ActionFailure.HANDLER_ERROR,
            detail,
            location=fault_location(exc),
            finalized=finalized,
            trace="".join(traceback.format_exception(exc)),
        )

    def describe(self) -> str:
        """Diagnostic message stored on a failed task."""

        if self.reason is ActionFailure.HANDLER_ERROR and self.location:
            return f"Failed @ {self.location} - {self.detail}"
        return self.detail


@dataclass(slots=True)
class ActionContext:
    """Execution context handed to action handlers."""

    task: TaskView
    repository: TaskRepository
    progress: ProgressTracker
    finalized: bool = False
    failure_message: str | None = None
    result: Any = field(default=None)

    @property
    def task_id(self) -> int:
        return self.task.task_id

    @property
    def meta(self) -> dict[str, Any]:
        return self.task.meta

    def push_progress(self, **delta: Any) -> None:
        """Append a progress record; the task store is not touched."""

        payload: dict[str, Any] = {
            "id": self.task.task_id,
            "status": "running",
            "progress": 0,
            "processed": 0,
            "total": 0,
            "eta": "—",
            "message": self.task.message or "",
        }
        payload.update(delta)
        self.progress.write(payload)

    def mark_preparing(self, message: str | None = None) -> None:
        """Report a preparation phase of the running handler.

        The claimed task stays running in the store; only its message changes
        and the progress log shows status ``preparing``.
        """

        text = message or "Preparing"
        self.repository.update_progress(
            task_id=self.task.task_id,
            progress=self.task.progress,
            message=text,
        )
        self.task.message = text
        self.push_progress(status="preparing", progress=self.task.progress, message=text)

    def finish(self, result: Any = None, message: str | None = None) -> None:
        """Finalize the task as finished from inside the handler."""

        self.task = self.repository.mark_finished(
            task_id=self.task.task_id,
            result=result,
            message=message,
        )
        self.finalized = True
        self.result = result
        self.push_progress(status="finished", progress=100, message=message or "Done")

    def fail(self, message: str) -> None:
        """Finalize the task as failed from inside the handler."""

        self.task = self.repository.mark_failed(task_id=self.task.task_id, message=message)
        self.finalized = True
        self.failure_message = message
        self.push_progress(status="failed", message=message)


class BaseWorker(ABC):
    """Default implementation of the worker contract.

    Subclasses implement ``identifier()`` and decorate handler methods with
    ``@action(...)``. The dispatch table is built once per class when the
    subclass is defined.
    """

    _action_table: ClassVar[dict[str, str]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        table: dict[str, str] = {}
        for klass in reversed(cls.__mro__):
            for attribute, value in vars(klass).items():
                action_name = getattr(value, ACTION_ATTRIBUTE, None)
                if action_name is not None:
                    table[handler_name(action_name)] = attribute
        cls._action_table = table

    def __init__(self, settings: Mapping[str, Any] | None = None) -> None:
        self._settings: dict[str, Any] = dict(settings or {})

    @abstractmethod
    def identifier(self) -> str:
        """Stable unique worker key."""

    def scope(self) -> str:
        return DEFAULT_WORKER_SCOPE

    def icon(self) -> str:
        return "fa-cogs"

    def title(self) -> str:
        return self.identifier().replace("_", " ").replace("-", " ").title()

    def description(self) -> str:
        return ""

    def settings(self) -> dict[str, Any]:
        return dict(self._settings)

    def get_config(self, key: str, default: Any = None) -> Any:
        """Read a setting using dot notation, e.g. ``schedule.enabled``."""

        value: Any = self._settings
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def set_config(self, key: str, value: Any) -> None:
        current = self._settings
        parts = key.split(".")
        for part in parts[:-1]:
            nested = current.get(part)
            if not isinstance(nested, dict):
                nested = {}
                current[part] = nested
            current = nested
        current[parts[-1]] = value

    def actions(self) -> dict[str, ActionHandler]:
        return {name: getattr(self, attribute) for name, attribute in self._action_table.items()}

    def schedule(self) -> ScheduleSpec:
        return ScheduleSpec.from_settings(self._settings.get("schedule"))

    def should_run_now(self, now: datetime) -> bool:
        return schedule_is_due(self.schedule(), now)

    def render_widget(self) -> str:
        actions = "".join(
            f'<button type="button" data-action="{html.escape(name)}">{html.escape(name)}</button>'
            for name in sorted(self.actions())
        )
        return (
            f'<section class="worker-widget" data-identifier="{html.escape(self.identifier())}">'
            f'<i class="{html.escape(self.icon())}"></i>'
            f"<h3>{html.escape(self.title())}</h3>"
            f"<p>{html.escape(self.description())}</p>"
            f'<div class="worker-actions">{actions}</div>'
            "</section>"
        )


def schedule_is_due(spec: ScheduleSpec, now: datetime) -> bool:
    """Match a schedule against wall-clock ``now``.

    Times in the schedule are read in the timezone of ``now``.
    """

    if not spec.enabled:
        return False

    if spec.type is ScheduleType.ONCE:
        scheduled = parse_schedule_datetime(spec.once_at, now)
        if scheduled is None:
            return False
        elapsed = (now - scheduled).total_seconds()
        return 0 <= elapsed < ONCE_TOLERANCE_SECONDS

    if spec.type is ScheduleType.PERIODIC:
        clock = _parse_clock(spec.time)
        return clock is not None and clock == (now.hour, now.minute)

    if spec.type is ScheduleType.REGULAR:
        start = _parse_clock(spec.start_time)
        end = _parse_clock(spec.end_time)
        if start is None or end is None:
            return False
        current = now.hour * 60 + now.minute
        if current < start[0] * 60 + start[1] or current > end[0] * 60 + end[1]:
            return False
        if spec.interval == "every_15min":
            return now.minute % 15 == 0
        if spec.interval == "every_30min":
            return now.minute % 30 == 0
        if spec.interval == "hourly":
            return now.minute == 0
        return False

    return False


def parse_schedule_datetime(raw: str | None, now: datetime) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None and now.tzinfo is not None:
        parsed = parsed.replace(tzinfo=now.tzinfo)
    return parsed


def _parse_clock(raw: str | None) -> tuple[int, int] | None:
    if not raw or ":" not in raw:
        return None
    hour, _, minute = raw.partition(":")
    try:
        return int(hour), int(minute[:2])
    except ValueError:
        return None


def dispatch_action(worker: WorkerContract, action_name: str, context: ActionContext) -> ActionOutcome:
    """Invoke the handler registered for ``action_name`` and describe the outcome.

    Exceptions raised by the worker's dispatch table or by the handler become
    failure outcomes. ``BaseException`` subclasses such as ``SystemExit`` are
    left to the driver's per-task boundary.
    """

    key = handler_name(action_name)
    try:
        handler = worker.actions().get(key)
        if handler is None:
            return ActionOutcome.failure(
                ActionFailure.UNKNOWN_ACTION,
                f"{type(worker).__name__} has no handler for action '{action_name}' ({key}).",
            )
        handler(context)
    except SecurityViolation as exc:
        return ActionOutcome.failure(
            ActionFailure.SECURITY_VIOLATION,
            str(exc),
            finalized=context.finalized,
        )
    except Exception as exc:  # noqa: BLE001
        return ActionOutcome.from_exception(exc, finalized=context.finalized)

    if context.failure_message is not None:
        return ActionOutcome.failure(
            ActionFailure.REPORTED,
            context.failure_message,
            finalized=True,
        )
    return ActionOutcome.success(finalized=context.finalized)


def fault_location(exc: BaseException) -> str | None:
    """``file.py:line`` of the innermost frame that raised ``exc``."""

    frames = traceback.extract_tb(exc.__traceback__)
    if not frames:
        return None
    frame = frames[-1]
    return f"{Path(frame.filename).name}:{frame.lineno}"
