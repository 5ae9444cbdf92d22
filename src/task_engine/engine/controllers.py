"""Controllers for task-engine CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from task_engine.config import Settings
from task_engine.engine.catalog import WorkerCatalog, default_catalog
from task_engine.engine.models import TaskStatus, TaskView
from task_engine.engine.services import EngineService


@dataclass(slots=True)
class RunCommand:
    """CLI input for one driver pass."""

    db_path: Path | None


@dataclass(slots=True)
class CreateTaskCommand:
    """CLI input for task creation."""

    db_path: Path | None
    identifier: str
    action: str
    options: dict[str, Any]
    priority: str
    start_at: datetime | None
    max_attempts: int | None
    launch: bool


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    identifier: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for commands addressing one task."""

    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class TaskLogsCommand:
    """CLI input for reading a task's log."""

    db_path: Path | None
    task_id: int
    level: str | None
    errors_only: bool
    limit: int | None


@dataclass(slots=True)
class WorkerMetricsCommand:
    db_path: Path | None
    identifier: str | None
    hours: int


@dataclass(slots=True)
class PruneCommand:
    db_path: Path | None
    older_than_days: int | None


@dataclass(slots=True)
class WorkersCommand:
    """CLI input for worker administration without arguments."""

    db_path: Path | None


@dataclass(slots=True)
class WorkerIdentifierCommand:
    db_path: Path | None
    identifier: str


@dataclass(slots=True)
class ConfigureWorkerCommand:
    """CLI input for merging worker settings."""

    db_path: Path | None
    identifier: str
    settings: dict[str, Any]


class EngineCliController:
    """Turns CLI commands into service calls and printable lines."""

    def __init__(self, catalog_factory: Callable[[Settings], WorkerCatalog] | None = None) -> None:
        self._catalog_factory = catalog_factory or _default_catalog_for

    def run(self, command: RunCommand) -> list[str]:
        with self._service(command.db_path) as service:
            summary = service.run_pass()
        return [
            "Driver pass completed:",
            f"  scheduled={summary.scheduled}",
            f"  processed={summary.processed}",
            f"  finished={summary.finished}",
            f"  failed={summary.failed}",
            f"  skipped={summary.skipped}",
            f"  cleaned_files={summary.cleaned_files}",
        ]

    def create_task(self, command: CreateTaskCommand) -> list[str]:
        with self._service(command.db_path) as service:
            task = service.create_task(
                command.identifier,
                command.action,
                command.options,
                priority=command.priority,
                start_at=command.start_at,
                max_attempts=command.max_attempts,
                launch=command.launch,
            )
        return [
            f"Task created: {task.task_id}",
            f"  worker={task.identifier} action={task.action} status={task.status.value}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        status_filter = TaskStatus(command.status) if command.status else None
        with self._service(command.db_path) as service:
            tasks = service.list_tasks(
                status=status_filter,
                identifier=command.identifier,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        with self._service(command.db_path) as service:
            details = service.get_task_details(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Worker: {task.identifier}",
            f"Action: {task.action}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Attempts: {task.attempts}/{task.max_attempts}",
            f"Can retry: {'yes' if task.can_retry() else 'no'}",
            f"Progress: {task.progress}%",
            f"Duration: {_duration(task)}",
            f"Message: {task.message or '-'}",
            f"Options: {json.dumps(task.meta, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            status_from = event.status_from.value if event.status_from else "-"
            status_to = event.status_to.value if event.status_to else "-"
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{status_from} -> {status_to}",
            )
        return lines

    def progress(self, command: TaskIdCommand) -> list[str]:
        with self._service(command.db_path) as service:
            snapshot = service.poll_progress(command.task_id)
        return [json.dumps(snapshot.to_dict(), ensure_ascii=False, sort_keys=True)]

    def result(self, command: TaskIdCommand) -> list[str]:
        with self._service(command.db_path) as service:
            result = service.get_result(command.task_id)
        if result.is_file:
            return [
                f"File: {result.path}",
                f"Filename: {result.filename}",
                f"Content type: {result.content_type}",
            ]
        return [json.dumps(result.value, ensure_ascii=False, sort_keys=True)]

    def retry_task(self, command: TaskIdCommand) -> list[str]:
        with self._service(command.db_path) as service:
            task = service.retry_task(command.task_id, launch=False)
        return [f"Task re-queued: {command.task_id} -> {task.task_id}"]

    def cancel_task(self, command: TaskIdCommand) -> list[str]:
        with self._service(command.db_path) as service:
            service.cancel_task(command.task_id)
        return [f"Task cancelled: {command.task_id}"]

    def stats(self, command: RunCommand) -> list[str]:
        with self._service(command.db_path) as service:
            stats = service.stats()
        lines = ["Tasks by status:"]
        lines.extend(f"  {status}={count}" for status, count in stats["tasks"].items())
        lines.append(f"Active tasks: {stats['active']}")
        lines.append(f"Workers: {stats['workers']} (active {stats['active_workers']})")
        return lines

    def task_logs(self, command: TaskLogsCommand) -> list[str]:
        with self._service(command.db_path) as service:
            entries = service.task_logs(
                command.task_id,
                level=command.level,
                errors_only=command.errors_only,
                limit=command.limit,
            )
        lines = [f"Log entries: {len(entries)}"]
        for entry in entries:
            lines.append(f"  {entry.format_line(include_trace=False)}")
            trace = entry.context.get("trace")
            if trace:
                lines.extend(f"    {line}" for line in str(trace).rstrip().splitlines())
        return lines

    def export_task_logs(self, command: TaskIdCommand) -> list[str]:
        with self._service(command.db_path) as service:
            exported = service.export_task_logs(command.task_id)
        return exported.splitlines()

    def worker_metrics(self, command: WorkerMetricsCommand) -> list[str]:
        with self._service(command.db_path) as service:
            metrics = service.worker_metrics(command.identifier, hours=command.hours)
        lines = [f"Worker metrics (last {command.hours}h): {len(metrics)}"]
        for identifier in sorted(metrics):
            entry = metrics[identifier]
            lines.append(
                f"  {identifier} tasks={entry.total_tasks} finished={entry.finished} "
                f"failed={entry.failed} success_rate={entry.success_rate:.2f}% "
                f"avg_duration={entry.average_duration:.3f}s",
            )
        return lines

    def prune(self, command: PruneCommand) -> list[str]:
        with self._service(command.db_path) as service:
            removed = service.prune(older_than_days=command.older_than_days)
        return [f"Pruned tasks: {removed}"]

    def discover_workers(self, command: WorkersCommand) -> list[str]:
        with self._service(command.db_path) as service:
            created = service.discover_workers()
        lines = [f"Discovered workers: {len(created)}"]
        lines.extend(f"  {worker.identifier} ({worker.implementation})" for worker in created)
        return lines

    def rescan_workers(self, command: WorkersCommand) -> list[str]:
        with self._service(command.db_path) as service:
            updated = service.rescan_workers()
        lines = [f"Updated workers: {len(updated)}"]
        lines.extend(f"  {worker.identifier} ({worker.implementation})" for worker in updated)
        return lines

    def clean_workers(self, command: WorkersCommand) -> list[str]:
        with self._service(command.db_path) as service:
            removed = service.clean_orphaned_workers()
        return [f"Removed orphaned workers: {removed}"]

    def list_workers(self, command: WorkersCommand) -> list[str]:
        with self._service(command.db_path) as service:
            listings = service.list_workers()
        lines = [f"Workers: {len(listings)}"]
        for listing in listings:
            worker = listing.worker
            counts = " ".join(
                f"{status}={count}" for status, count in sorted(listing.task_counts.items())
            )
            lines.append(
                f"  {worker.position}. {worker.identifier} "
                f"active={'yes' if worker.active else 'no'} "
                f"loadable={'yes' if listing.loadable else 'no'} "
                f"title={listing.title!r} tasks=[{counts}]",
            )
        return lines

    def activate_worker(self, command: WorkerIdentifierCommand) -> list[str]:
        with self._service(command.db_path) as service:
            changed = service.activate_worker(command.identifier)
        if not changed:
            raise ValueError(f"Worker not found: {command.identifier}")
        return [f"Worker activated: {command.identifier}"]

    def deactivate_worker(self, command: WorkerIdentifierCommand) -> list[str]:
        with self._service(command.db_path) as service:
            changed = service.deactivate_worker(command.identifier)
        if not changed:
            raise ValueError(f"Worker not found: {command.identifier}")
        return [f"Worker deactivated: {command.identifier}"]

    def configure_worker(self, command: ConfigureWorkerCommand) -> list[str]:
        with self._service(command.db_path) as service:
            worker = service.save_worker_settings(command.identifier, command.settings)
        return [
            f"Worker settings saved: {worker.identifier}",
            f"  {json.dumps(worker.settings, ensure_ascii=False, sort_keys=True)}",
        ]

    @contextmanager
    def _service(self, db_path: Path | None) -> Iterator[EngineService]:
        settings = Settings.from_env(db_path=db_path)
        settings.validate()
        service = EngineService.from_settings(settings, catalog=self._catalog_factory(settings))
        try:
            yield service
        finally:
            service.close()


def parse_options(raw_options: tuple[str, ...], options_json: str | None) -> dict[str, Any]:
    """Merge ``--options-json`` with repeated ``--option key=value`` pairs."""

    options: dict[str, Any] = {}
    if options_json:
        parsed = json.loads(options_json)
        if not isinstance(parsed, dict):
            raise ValueError("--options-json must be a JSON object.")
        options.update(parsed)
    for item in raw_options:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Invalid option {item!r}; expected key=value.")
        options[key.strip()] = value
    return options


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} worker={task.identifier} action={task.action} "
        f"status={task.status.value} priority={task.priority.value} "
        f"attempts={task.attempts}/{task.max_attempts} progress={task.progress}% "
        f"created={task.created_at.isoformat()}"
    )


def _duration(task: TaskView) -> str:
    seconds = task.duration_seconds
    return "-" if seconds is None else f"{seconds:.1f}s"


def _default_catalog_for(settings: Settings) -> WorkerCatalog:
    return default_catalog(extra_modules=settings.discovery.worker_modules)
