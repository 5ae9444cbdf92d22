"""Leveled per-task log stored next to the task rows.

Entries are mirrored to the module logger so that host applications see
them in their regular logging output as well.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from task_engine.engine.models import LogLevel, TaskLogEntry
from task_engine.storage.common import (
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.database import Database
from task_engine.storage.sqlmodel_models import TaskLogRecord

logger = logging.getLogger(__name__)


class TaskLogger:
    def __init__(self, database: Database) -> None:
        self.database = database

    def log(
        self,
        task_id: int,
        level: LogLevel | str,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        level = LogLevel(level)
        with Session(self.database.engine) as session:
            session.add(
                TaskLogRecord(
                    task_id=task_id,
                    level=level.value,
                    message=message,
                    context_json=dump_json(dict(context)) if context else None,
                    created_at=utc_now(),
                ),
            )
            session.commit()
        logger.log(level.logging_level, "Task %d: %s", task_id, message)

    def info(self, task_id: int, message: str, context: Mapping[str, Any] | None = None) -> None:
        self.log(task_id, LogLevel.INFO, message, context)

    def error(self, task_id: int, message: str, context: Mapping[str, Any] | None = None) -> None:
        self.log(task_id, LogLevel.ERROR, message, context)

    def logs(self, task_id: int, limit: int | None = None) -> list[TaskLogEntry]:
        """Entries of one task, oldest first; ``limit`` keeps only the newest ones."""

        with Session(self.database.engine) as session:
            statement = (
                select(TaskLogRecord)
                .where(TaskLogRecord.task_id == task_id)
                .order_by(col(TaskLogRecord.id).desc())
            )
            if limit:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_entry(row) for row in reversed(rows)]

    def logs_by_level(self, task_id: int, *levels: LogLevel | str) -> list[TaskLogEntry]:
        wanted = [LogLevel(level).value for level in levels]
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(TaskLogRecord)
                .where(
                    TaskLogRecord.task_id == task_id,
                    col(TaskLogRecord.level).in_(wanted),
                )
                .order_by(col(TaskLogRecord.id).asc()),
            ).all()
        return [_to_entry(row) for row in rows]

    def error_logs(self, task_id: int) -> list[TaskLogEntry]:
        return self.logs_by_level(task_id, *LogLevel.errors())

    def clear_logs(self, task_id: int) -> int:
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_delete(TaskLogRecord).where(col(TaskLogRecord.task_id) == task_id),
            )
            session.commit()
        return int(result.rowcount or 0)

    def clear_old_logs(self, *, older_than: datetime) -> int:
        """Delete entries written before ``older_than``; return how many went."""

        with Session(self.database.engine) as session:
            result = session.exec(
                sa_delete(TaskLogRecord).where(
                    col(TaskLogRecord.created_at) < to_db_datetime(older_than),
                ),
            )
            session.commit()
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("Removed %d task log entries older than %s", removed, older_than)
        return removed

    def export(self, task_id: int) -> str:
        """All entries of a task as text, one ``[time] [LEVEL] message`` line each."""

        return "".join(entry.format_line() + "\n" for entry in self.logs(task_id))


def _to_entry(row: TaskLogRecord) -> TaskLogEntry:
    return TaskLogEntry(
        log_id=row.id or 0,
        task_id=row.task_id,
        level=LogLevel(row.level),
        message=row.message,
        context=load_json_object(row.context_json),
        created_at=to_utc_aware_datetime(row.created_at),
    )
