"""Persistent task store and lifecycle state machine."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from task_engine.engine.errors import InvalidTaskTransitionError, TaskNotFoundError
from task_engine.engine.models import (
    PRIORITY_WEIGHTS,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskPriority,
    TaskStatus,
    TaskView,
    WorkerMetrics,
)
from task_engine.storage.common import (
    dump_json,
    load_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.database import Database
from task_engine.storage.sqlmodel_models import TaskEventRecord, TaskLogRecord, TaskRecord

_STARTABLE = (TaskStatus.QUEUED, TaskStatus.PREPARING)
_ACTIVE_VALUES = [status.value for status in TaskStatus.active()]


class TaskRepository:
    """Task queue persistence facade backed by SQLModel + SQLite.

    Every status change is a conditional UPDATE gated on the status read just
    before it, so a row changed concurrently by another process is never
    overwritten.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    @property
    def engine(self) -> Engine:
        return self.database.engine

    def enqueue(self, payload: TaskCreate) -> TaskView:
        """Create a queued task."""

        now = utc_now()
        with Session(self.engine) as session:
            row = TaskRecord(
                identifier=payload.identifier,
                action=payload.action,
                status=TaskStatus.QUEUED.value,
                message=payload.message,
                started_by=payload.started_by,
                meta_json=dump_json(payload.meta or {}),
                start_at=to_db_datetime(payload.start_at) if payload.start_at else None,
                attempts=max(0, payload.attempts),
                max_attempts=payload.max_attempts,
                priority=TaskPriority(payload.priority).value,
                progress=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=_row_id(row),
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.QUEUED,
                details={
                    "action": payload.action,
                    "priority": row.priority,
                    "start_at": payload.start_at.isoformat() if payload.start_at else None,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def mark_preparing(self, *, task_id: int, message: str | None = None) -> TaskView:
        """Move a queued task into the preparing stage."""

        return self._transition(
            task_id=task_id,
            allowed_from=(TaskStatus.QUEUED,),
            status_to=TaskStatus.PREPARING,
            event_type="preparing",
            values=_with_message({}, message),
            details={"message": message} if message else {},
        )

    def mark_running(self, *, task_id: int) -> TaskView | None:
        """Atomically claim a queued or preparing task for execution.

        Returns None when the task is no longer startable, which happens when
        another driver pass claimed or finalized it first.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in _STARTABLE:
                return None

            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task_id,
                    col(TaskRecord.status) == previous.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    attempts=row.attempts + 1,
                    started_at=to_db_datetime(now),
                    finished_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            session.expire_all()
            claimed = self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=previous,
                status_to=TaskStatus.RUNNING,
                details={"attempt": claimed.attempts},
            )
            session.commit()
            return _to_task_view(claimed)

    def mark_finished(
        self,
        *,
        task_id: int,
        result: Any = None,
        message: str | None = None,
    ) -> TaskView:
        """Mark a running task as finished with progress 100."""

        now = utc_now()
        values: dict[str, Any] = {"progress": 100, "finished_at": to_db_datetime(now)}
        if message is not None:
            values["message"] = message
        if result is not None:
            values["result_json"] = dump_json(result)
        return self._transition(
            task_id=task_id,
            allowed_from=(TaskStatus.RUNNING,),
            status_to=TaskStatus.FINISHED,
            event_type="finished",
            values=values,
            details={"message": message} if message else {},
        )

    def mark_failed(
        self,
        *,
        task_id: int,
        message: str,
        allowed_from: tuple[TaskStatus, ...] | None = None,
    ) -> TaskView:
        """Mark a non-terminal task as failed.

        ``allowed_from`` narrows the accepted previous statuses, e.g. to fail a
        task only while it is still queued.
        """

        now = utc_now()
        return self._transition(
            task_id=task_id,
            allowed_from=allowed_from or TaskStatus.active(),
            status_to=TaskStatus.FAILED,
            event_type="failed",
            values={"message": message, "finished_at": to_db_datetime(now)},
            details={"message": message},
        )

    def mark_cancelled(self, *, task_id: int, message: str | None = None) -> TaskView:
        """Cancel a non-terminal task; a running handler is not interrupted."""

        now = utc_now()
        return self._transition(
            task_id=task_id,
            allowed_from=TaskStatus.active(),
            status_to=TaskStatus.CANCELLED,
            event_type="cancelled",
            values=_with_message({"finished_at": to_db_datetime(now)}, message),
            details={"message": message} if message else {},
        )

    def update_progress(
        self,
        *,
        task_id: int,
        progress: int,
        message: str | None = None,
    ) -> bool:
        """Persist a clamped progress value for a non-terminal task."""

        clamped = min(100, max(0, int(progress)))
        values: dict[str, Any] = {"progress": clamped, "updated_at": to_db_datetime(utc_now())}
        if message is not None:
            values["message"] = message
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task_id,
                    col(TaskRecord.status).in_(_ACTIVE_VALUES),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def retry_task(self, *, task_id: int) -> TaskView:
        """Re-enqueue a failed task as a new queued task.

        The failed row stays terminal; the new task carries its attempt count
        forward so ``max_attempts`` bounds the whole chain.
        """

        original = self.get_task(task_id=task_id)
        if original is None:
            raise TaskNotFoundError(task_id)
        if not original.can_retry():
            raise InvalidTaskTransitionError(
                f"Task {task_id} cannot be retried "
                f"(status={original.status.value}, attempts={original.attempts}/"
                f"{original.max_attempts}).",
            )

        retried = self.enqueue(
            TaskCreate(
                identifier=original.identifier,
                action=original.action,
                meta=dict(original.meta),
                priority=original.priority,
                started_by=original.started_by,
                max_attempts=original.max_attempts,
                attempts=original.attempts,
            ),
        )
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="manual_retry",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.FAILED,
                details={"retry_task_id": retried.task_id},
            )
            session.commit()
        return retried

    def get_task(self, *, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                return None
            return _to_task_view(row)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        identifier: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and worker."""

        with Session(self.engine) as session:
            statement = select(TaskRecord)
            if status is not None:
                statement = statement.where(TaskRecord.status == status.value)
            if identifier is not None:
                statement = statement.where(TaskRecord.identifier == identifier)
            statement = statement.order_by(
                col(TaskRecord.created_at).desc(),
                col(TaskRecord.id).desc(),
            ).limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: int) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(TaskRecord, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(col(TaskEventRecord.created_at).asc(), col(TaskEventRecord.id).asc()),
            ).all()

        events = [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
                status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in event_rows
        ]
        return TaskDetails(task=_to_task_view(task), events=events)

    def list_due_tasks(self, *, now: datetime | None = None, limit: int = 0) -> list[TaskView]:
        """Queued tasks released by their start time, in claim order."""

        current = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord).where(
                    TaskRecord.status == TaskStatus.QUEUED.value,
                    (col(TaskRecord.start_at).is_(None)) | (col(TaskRecord.start_at) <= current),
                ),
            ).all()
        views = sorted(
            (_to_task_view(row) for row in rows),
            key=lambda task: (PRIORITY_WEIGHTS[task.priority], task.created_at, task.task_id),
        )
        if limit > 0:
            return views[:limit]
        return views

    def count_active(self) -> int:
        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(TaskRecord)
                .where(col(TaskRecord.status).in_(_ACTIVE_VALUES)),
            ).one()
        return int(count)

    def has_incomplete_task(self, *, identifier: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRecord.id)
                .where(
                    TaskRecord.identifier == identifier,
                    col(TaskRecord.status).in_(_ACTIVE_VALUES),
                )
                .limit(1),
            ).first()
        return row is not None

    def count_by_status(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord.status, func.count()).group_by(TaskRecord.status),
            ).all()
        counts = {status.value: 0 for status in TaskStatus}
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def count_by_identifier(self) -> dict[str, dict[str, int]]:
        """Per-worker task counters keyed by status value."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord.identifier, TaskRecord.status, func.count()).group_by(
                    TaskRecord.identifier,
                    TaskRecord.status,
                ),
            ).all()
        counts: dict[str, dict[str, int]] = {}
        for identifier, status, count in rows:
            counts.setdefault(identifier, {})[status] = int(count)
        return counts

    def worker_metrics(
        self,
        *,
        identifier: str | None = None,
        since: datetime | None = None,
    ) -> dict[str, WorkerMetrics]:
        """Per-worker execution statistics of tasks created at or after ``since``."""

        with Session(self.engine) as session:
            statement = select(TaskRecord)
            if identifier is not None:
                statement = statement.where(TaskRecord.identifier == identifier)
            if since is not None:
                statement = statement.where(col(TaskRecord.created_at) >= to_db_datetime(since))
            rows = session.exec(statement).all()

        metrics: dict[str, WorkerMetrics] = {}
        for row in rows:
            task = _to_task_view(row)
            entry = metrics.setdefault(task.identifier, WorkerMetrics(identifier=task.identifier))
            entry.total_tasks += 1
            if task.status == TaskStatus.FINISHED:
                entry.finished += 1
            elif task.status == TaskStatus.FAILED:
                entry.failed += 1
            elif task.status == TaskStatus.CANCELLED:
                entry.cancelled += 1
            duration = task.duration_seconds
            if duration is not None:
                entry.total_execution_seconds += duration
                entry.timed_tasks += 1
            if task.started_at is not None and (
                entry.last_execution is None or task.started_at > entry.last_execution
            ):
                entry.last_execution = task.started_at
        return metrics

    def prune_terminal_tasks(self, *, older_than: datetime) -> list[int]:
        """Delete terminal tasks finished before ``older_than``; return their ids."""

        cutoff = to_db_datetime(older_than)
        terminal_values = [
            TaskStatus.FINISHED.value,
            TaskStatus.FAILED.value,
            TaskStatus.CANCELLED.value,
        ]
        with Session(self.engine) as session:
            ids = list(
                session.exec(
                    select(TaskRecord.id).where(
                        col(TaskRecord.status).in_(terminal_values),
                        col(TaskRecord.finished_at).is_not(None),
                        col(TaskRecord.finished_at) < cutoff,
                    ),
                ).all(),
            )
            if not ids:
                return []
            session.exec(sa_delete(TaskLogRecord).where(col(TaskLogRecord.task_id).in_(ids)))
            session.exec(sa_delete(TaskEventRecord).where(col(TaskEventRecord.task_id).in_(ids)))
            session.exec(sa_delete(TaskRecord).where(col(TaskRecord.id).in_(ids)))
            session.commit()
        return [int(task_id) for task_id in ids if task_id is not None]

    def _transition(  # noqa: PLR0913
        self,
        *,
        task_id: int,
        allowed_from: tuple[TaskStatus, ...],
        status_to: TaskStatus,
        event_type: str,
        values: dict[str, Any],
        details: dict[str, object],
    ) -> TaskView:
        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in allowed_from:
                raise InvalidTaskTransitionError(
                    f"Task {task_id} cannot move from {previous.value} to {status_to.value}.",
                )

            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task_id,
                    col(TaskRecord.status) == previous.value,
                )
                .values(status=status_to.value, updated_at=to_db_datetime(now), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTaskTransitionError(
                    "Task state changed concurrently; "
                    f"please retry command (task_id={task_id}).",
                )

            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details=details,
            )
            session.commit()
            session.expire_all()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def _get_task_row(self, *, session: Session, task_id: int) -> TaskRecord:
        row = session.get(TaskRecord, task_id)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: int,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRecord(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _with_message(values: dict[str, Any], message: str | None) -> dict[str, Any]:
    if message is not None:
        values["message"] = message
    return values


def _row_id(row: TaskRecord) -> int:
    if row.id is None:
        raise RuntimeError("Task row has no id after flush.")
    return row.id


def _to_task_view(row: TaskRecord) -> TaskView:
    return TaskView(
        task_id=_row_id(row),
        identifier=row.identifier,
        action=row.action,
        status=TaskStatus(row.status),
        message=row.message,
        started_by=row.started_by,
        meta=load_json_object(row.meta_json),
        result=load_json(row.result_json),
        start_at=optional_utc(row.start_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        priority=TaskPriority(row.priority),
        progress=row.progress,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
