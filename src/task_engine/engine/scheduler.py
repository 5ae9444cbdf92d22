"""Recurring-schedule task generator."""

from __future__ import annotations

import logging
from datetime import datetime

from task_engine.engine.models import ScheduleType, TaskCreate, TaskView
from task_engine.engine.progress import ProgressTracker
from task_engine.engine.repository import TaskRepository
from task_engine.engine.resolver import WorkerResolver
from task_engine.storage.common import utc_now

logger = logging.getLogger(__name__)

SCHEDULED_ACTION = "make"


class Scheduler:
    """Creates ``make`` tasks for active workers whose schedule is due.

    A worker never gets a second task while one of its tasks is still queued,
    preparing or running. ``once`` schedules are materialized when settings
    are saved, so they are not handled here.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        resolver: WorkerResolver,
        progress: ProgressTracker,
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self.progress = progress

    def run(self, now: datetime | None = None) -> int:
        """Run one scheduling pass and return the number of tasks created."""

        wall_clock = (now or utc_now()).astimezone()
        identifiers = [worker.identifier for worker in self.resolver.registry.list_active_workers()]
        workers = self.resolver.resolve_workers(identifiers)

        created = 0
        for identifier, worker in workers.items():
            spec = worker.schedule()
            if not spec.enabled or not spec.is_recurring:
                continue
            try:
                due = worker.should_run_now(wall_clock)
            except Exception:  # noqa: BLE001
                logger.warning("Schedule check failed for worker %s", identifier, exc_info=True)
                continue
            if not due:
                continue
            if self.repository.has_incomplete_task(identifier=identifier):
                logger.debug("Worker %s already has an incomplete task", identifier)
                continue

            task = self.repository.enqueue(
                TaskCreate(
                    identifier=identifier,
                    action=SCHEDULED_ACTION,
                    meta={"manual": False},
                    message="Scheduled",
                ),
            )
            seed_progress(self.progress, task, status="queued")
            logger.info(
                "Scheduled task %d for worker %s (%s)",
                task.task_id,
                identifier,
                spec.type.value,
            )
            created += 1
        return created


def materialize_once_schedule(
    *,
    repository: TaskRepository,
    progress: ProgressTracker,
    identifier: str,
    once_at: datetime,
    now: datetime | None = None,
) -> TaskView | None:
    """Queue the single task of a ``once`` schedule, released at ``once_at``."""

    if once_at <= (now or utc_now()):
        return None
    if repository.has_incomplete_task(identifier=identifier):
        return None
    task = repository.enqueue(
        TaskCreate(
            identifier=identifier,
            action=SCHEDULED_ACTION,
            meta={"manual": False, "schedule": ScheduleType.ONCE.value},
            start_at=once_at,
            message="Scheduled",
        ),
    )
    seed_progress(progress, task, status="queued")
    return task


def seed_progress(progress: ProgressTracker, task: TaskView, *, status: str) -> None:
    progress.init(
        {
            "id": task.task_id,
            "status": status,
            "progress": task.progress,
            "message": task.message or "",
        },
    )
