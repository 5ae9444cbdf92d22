"""Use-case facade consumed by the CLI and by host applications."""

from __future__ import annotations

import logging
import mimetypes
from collections.abc import Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from task_engine.config import Settings
from task_engine.engine.catalog import WorkerCatalog, default_catalog
from task_engine.engine.contracts import ActionOutcome, parse_schedule_datetime
from task_engine.engine.driver import DriverRunSummary, ExecutionDriver
from task_engine.engine.errors import (
    InvalidTaskIdError,
    InvalidTaskTransitionError,
    ProgressNotFoundError,
    ResultNotAvailableError,
    TaskNotFinishedError,
    TaskNotFoundError,
    WorkerResolutionError,
)
from task_engine.engine.launcher import AsyncLauncher, DeferHook
from task_engine.engine.models import (
    LogLevel,
    ProgressSnapshot,
    ScheduleSpec,
    ScheduleType,
    TaskCreate,
    TaskDetails,
    TaskLogEntry,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskView,
    WorkerListing,
    WorkerMetrics,
    WorkerView,
)
from task_engine.engine.progress import ProgressTracker
from task_engine.engine.registry import WorkerRegistry
from task_engine.engine.repository import TaskRepository
from task_engine.engine.resolver import WorkerCache, WorkerResolver
from task_engine.engine.scheduler import materialize_once_schedule, seed_progress
from task_engine.engine.tasklog import TaskLogger
from task_engine.storage.common import utc_now
from task_engine.storage.database import Database

logger = logging.getLogger(__name__)


class EngineService:
    """Wires store, registry, resolver, driver and launcher for one database."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        database: Database,
        catalog: WorkerCatalog,
        cache: WorkerCache | None = None,
        defer_hook: DeferHook | None = None,
        launcher: AsyncLauncher | None = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.catalog = catalog
        self.repository = TaskRepository(database)
        self.registry = WorkerRegistry(
            database,
            catalog,
            excluded_prefixes=settings.discovery.excluded_prefixes,
        )
        self.resolver = WorkerResolver(
            self.registry,
            catalog,
            cache
            or WorkerCache(
                ttl_seconds=settings.resolver.cache_ttl_seconds,
                max_size=settings.resolver.cache_max_size,
            ),
        )
        self.progress = ProgressTracker(
            settings.progress.root,
            snapshot_ttl_seconds=settings.progress.snapshot_ttl_hours * 3600,
            temp_ttl_seconds=settings.progress.temp_ttl_hours * 3600,
        )
        self.task_log = TaskLogger(database)
        self.driver = ExecutionDriver(
            repository=self.repository,
            resolver=self.resolver,
            progress=self.progress,
            task_log=self.task_log,
            batch_limit=settings.driver.batch_limit,
        )
        self.launcher = launcher or AsyncLauncher(
            db_path=database.db_path,
            run_inline=self.run_pass,
            methods=settings.launch.methods,
            defer_hook=defer_hook,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        catalog: WorkerCatalog | None = None,
        defer_hook: DeferHook | None = None,
    ) -> EngineService:
        """Open the configured database, migrate it and build the service."""

        database = Database(settings.db_path)
        database.init_schema()
        return cls(
            settings=settings,
            database=database,
            catalog=catalog or default_catalog(extra_modules=settings.discovery.worker_modules),
            defer_hook=defer_hook,
        )

    def close(self) -> None:
        self.database.close()

    def create_task(  # noqa: PLR0913
        self,
        identifier: str,
        action: str,
        options: Mapping[str, Any] | None = None,
        *,
        priority: TaskPriority | str = TaskPriority.NORMAL,
        started_by: int | None = None,
        start_at: datetime | None = None,
        max_attempts: int | None = None,
        prepare: bool = False,
        launch: bool = True,
    ) -> TaskView:
        """Queue a task for an active worker.

        Resolution errors propagate before anything is written. A task created
        with ``prepare=True`` waits in the preparing stage until ``run_task``.
        """

        with self.resolver.request_scope():
            self.resolver.resolve_worker(identifier)
        task = self.repository.enqueue(
            TaskCreate(
                identifier=identifier,
                action=action,
                meta=dict(options or {}),
                priority=TaskPriority(priority),
                started_by=started_by,
                start_at=start_at,
                max_attempts=max_attempts or self.settings.driver.default_max_attempts,
                message="Queued",
            ),
        )
        seed_progress(self.progress, task, status="queued")
        self.task_log.info(
            task.task_id,
            "Task created",
            {"worker": identifier, "action": action, "priority": task.priority.value},
        )

        if prepare:
            task = self.repository.mark_preparing(task_id=task.task_id, message="Preparing")
            seed_progress(self.progress, task, status="preparing")
            return task

        if launch and self._launch_allowed(task):
            self.launcher.launch()
            return self.repository.get_task(task_id=task.task_id) or task
        return task

    def run_task(self, task_id: int) -> ActionOutcome | None:
        """Execute one queued or preparing task right away."""

        task = self._require_task(task_id)
        if task.status not in (TaskStatus.QUEUED, TaskStatus.PREPARING):
            raise InvalidTaskTransitionError(
                f"Task {task_id} cannot be run from status {task.status.value}.",
            )
        with self.resolver.request_scope():
            return self.driver.execute(task)

    def run_pass(self, now: datetime | None = None) -> DriverRunSummary:
        return self.driver.run_once(now)

    def poll_progress(self, task_id: int) -> ProgressSnapshot:
        if task_id <= 0:
            raise InvalidTaskIdError(task_id)
        snapshot = self.progress.read_current(task_id)
        if snapshot is None:
            raise ProgressNotFoundError(task_id)
        return snapshot

    def progress_history(self, task_id: int, lines: int | None = None) -> list[str]:
        if task_id <= 0:
            raise InvalidTaskIdError(task_id)
        return self.progress.read_history(task_id, lines or self.settings.progress.history_lines)

    def get_result(self, task_id: int) -> TaskResult:
        """Return the stored result of a finished task."""

        task = self._require_task(task_id)
        if task.status != TaskStatus.FINISHED:
            raise TaskNotFinishedError(task_id, task.status.value)
        if task.result is None:
            raise ResultNotAvailableError(task_id)

        if isinstance(task.result, dict) and task.result.get("path"):
            path = Path(str(task.result["path"]))
            if not path.is_file():
                raise ResultNotAvailableError(task_id)
            filename = str(task.result.get("filename") or path.name)
            content_type, _ = mimetypes.guess_type(filename)
            return TaskResult(
                task_id=task_id,
                value=task.result,
                path=str(path),
                filename=filename,
                content_type=content_type or "application/octet-stream",
            )
        return TaskResult(task_id=task_id, value=task.result)

    def cancel_task(self, task_id: int, message: str | None = None) -> TaskView:
        task = self.repository.mark_cancelled(task_id=task_id, message=message or "Cancelled")
        self.progress.write({"id": task_id, "status": "cancelled", "message": task.message})
        return task

    def retry_task(self, task_id: int, *, launch: bool = True) -> TaskView:
        task = self.repository.retry_task(task_id=task_id)
        seed_progress(self.progress, task, status="queued")
        if launch and self._launch_allowed(task):
            self.launcher.launch()
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        identifier: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        return self.repository.list_tasks(status=status, identifier=identifier, limit=limit)

    def get_task_details(self, task_id: int) -> TaskDetails:
        details = self.repository.get_task_details(task_id=task_id)
        if details is None:
            raise TaskNotFoundError(task_id)
        return details

    def stats(self) -> dict[str, Any]:
        return {
            "tasks": self.repository.count_by_status(),
            "active": self.repository.count_active(),
            "workers": len(self.registry.list_workers()),
            "active_workers": len(self.registry.list_active_workers()),
            "cache": self.resolver.cache_stats(),
        }

    def worker_metrics(
        self,
        identifier: str | None = None,
        *,
        hours: int = 24,
        now: datetime | None = None,
    ) -> dict[str, WorkerMetrics]:
        """Per-worker success rate and durations of tasks created in the last ``hours``."""

        since = (now or utc_now()) - timedelta(hours=hours)
        return self.repository.worker_metrics(identifier=identifier, since=since)

    def task_logs(
        self,
        task_id: int,
        *,
        level: LogLevel | str | None = None,
        errors_only: bool = False,
        limit: int | None = None,
    ) -> list[TaskLogEntry]:
        self._require_task(task_id)
        if errors_only:
            return self.task_log.error_logs(task_id)
        if level is not None:
            return self.task_log.logs_by_level(task_id, level)
        return self.task_log.logs(task_id, limit)

    def export_task_logs(self, task_id: int) -> str:
        self._require_task(task_id)
        return self.task_log.export(task_id)

    def prune(self, *, older_than_days: int | None = None, now: datetime | None = None) -> int:
        """Delete old terminal tasks with their progress logs, and old task log entries."""

        days = (
            older_than_days
            if older_than_days is not None
            else self.settings.driver.task_retention_days
        )
        cutoff = (now or utc_now()) - timedelta(days=days)
        removed = self.repository.prune_terminal_tasks(older_than=cutoff)
        for task_id in removed:
            self.progress.remove(task_id)
        self.task_log.clear_old_logs(older_than=cutoff)
        if removed:
            logger.info("Pruned %d terminal task(s) older than %d day(s)", len(removed), days)
        return len(removed)

    def discover_workers(self) -> list[WorkerView]:
        return self.registry.discover()

    def rescan_workers(self) -> list[WorkerView]:
        updated = self.registry.rescan()
        self.resolver.clear_cache()
        return updated

    def clean_orphaned_workers(self) -> int:
        removed = self.registry.clean_orphaned()
        self.resolver.clear_cache()
        return removed

    def activate_worker(self, identifier: str) -> bool:
        changed = self.registry.activate(identifier)
        self.resolver.clear_cache(identifier)
        return changed

    def deactivate_worker(self, identifier: str) -> bool:
        changed = self.registry.deactivate(identifier)
        self.resolver.clear_cache(identifier)
        return changed

    def list_workers(self, *, include_hidden: bool = True) -> list[WorkerListing]:
        """Workers with display title, loadability and per-status task counts."""

        counts = self.repository.count_by_identifier()
        listings: list[WorkerListing] = []
        for worker in self.registry.list_workers(include_hidden=include_hidden):
            try:
                instance = self.catalog.create(worker.implementation, worker.settings)
                title = instance.title()
                loadable = True
            except WorkerResolutionError:
                title = worker.identifier
                loadable = False
            listings.append(
                WorkerListing(
                    worker=worker,
                    title=title,
                    loadable=loadable,
                    task_counts=counts.get(worker.identifier, {}),
                ),
            )
        return listings

    def save_worker_settings(
        self,
        identifier: str,
        settings: Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> WorkerView:
        """Merge worker settings and queue the task of a future ``once`` schedule."""

        worker = self.registry.update_settings(identifier, settings)
        self.resolver.clear_cache(identifier)

        spec = ScheduleSpec.from_settings(worker.settings.get("schedule"))
        if spec.enabled and spec.type is ScheduleType.ONCE:
            current = (now or utc_now()).astimezone()
            once_at = parse_schedule_datetime(spec.once_at, current)
            if once_at is None:
                logger.warning("Worker %s has an unreadable once schedule", identifier)
            else:
                task = materialize_once_schedule(
                    repository=self.repository,
                    progress=self.progress,
                    identifier=identifier,
                    once_at=once_at,
                    now=current,
                )
                if task is not None:
                    logger.info("Queued once-scheduled task %d for %s", task.task_id, identifier)
        return worker

    def _require_task(self, task_id: int) -> TaskView:
        task = self.repository.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _launch_allowed(self, task: TaskView) -> bool:
        if not self.settings.launch.enabled:
            return False
        return task.start_at is None or task.start_at <= utc_now()
