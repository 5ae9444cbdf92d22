"""CLI entrypoint for task-engine."""

import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from task_engine import __version__
from task_engine.engine.controllers import (
    ConfigureWorkerCommand,
    CreateTaskCommand,
    EngineCliController,
    ListTasksCommand,
    PruneCommand,
    RunCommand,
    TaskIdCommand,
    TaskLogsCommand,
    WorkerIdentifierCommand,
    WorkerMetricsCommand,
    WorkersCommand,
    parse_options,
)
from task_engine.engine.errors import TaskEngineError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = EngineCliController()
logger = logging.getLogger(__name__)

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="task-engine")
def task_engine() -> None:
    """Task engine CLI."""

    logging.basicConfig(
        level=os.getenv("TASK_ENGINE_LOG_LEVEL", "WARNING").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_engine.command("run")
@_DB_PATH_OPTION
def run(db_path: Path | None) -> None:
    """Run one driver pass: schedule, execute due tasks, clean up.

    Intended for cron; exits non-zero when the pass itself fails.
    """

    try:
        lines = CONTROLLER.run(RunCommand(db_path=db_path))
    except Exception as error:
        logger.exception("Driver pass failed")
        raise click.ClickException(f"Driver pass failed: {error}") from error
    _emit_lines(lines)


@task_engine.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("create")
@_DB_PATH_OPTION
@click.option("--worker", "identifier", required=True, help="Worker identifier.")
@click.option("--action", default="make", show_default=True, help="Action name.")
@click.option(
    "--option",
    "raw_options",
    multiple=True,
    help="Task option as key=value. Can be repeated.",
)
@click.option("--options-json", default=None, help="Task options as a JSON object.")
@click.option(
    "--priority",
    type=click.Choice(["low", "normal", "high"], case_sensitive=False),
    default="normal",
    show_default=True,
)
@click.option(
    "--start-at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M"]),
    default=None,
    help="Earliest start time (local time).",
)
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option(
    "--launch/--no-launch",
    default=True,
    show_default=True,
    help="Start a driver pass right away.",
)
def tasks_create(  # noqa: PLR0913
    db_path: Path | None,
    identifier: str,
    action: str,
    raw_options: tuple[str, ...],
    options_json: str | None,
    priority: str,
    start_at: datetime | None,
    max_attempts: int | None,
    launch: bool,
) -> None:
    """Create a task for an active worker."""

    _emit(
        lambda: CONTROLLER.create_task(
            CreateTaskCommand(
                db_path=db_path,
                identifier=identifier,
                action=action,
                options=parse_options(raw_options, options_json),
                priority=priority.lower(),
                start_at=start_at.astimezone() if start_at else None,
                max_attempts=max_attempts,
                launch=launch,
            ),
        ),
    )


@tasks.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(
        ["queued", "preparing", "running", "finished", "failed", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option("--worker", "identifier", default=None, help="Optional worker filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, identifier: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                identifier=identifier,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@_DB_PATH_OPTION
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: int) -> None:
    """Inspect one task with its event history."""

    _emit(lambda: CONTROLLER.inspect_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("progress")
@_DB_PATH_OPTION
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_progress(db_path: Path | None, task_id: int) -> None:
    """Print the latest progress snapshot as JSON."""

    _emit(lambda: CONTROLLER.progress(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("result")
@_DB_PATH_OPTION
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_result(db_path: Path | None, task_id: int) -> None:
    """Print the result of a finished task."""

    _emit(lambda: CONTROLLER.result(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("retry")
@_DB_PATH_OPTION
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_retry(db_path: Path | None, task_id: int) -> None:
    """Re-queue a failed task that still has attempts left."""

    _emit(lambda: CONTROLLER.retry_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@_DB_PATH_OPTION
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: int) -> None:
    """Cancel a queued, preparing or running task."""

    _emit(lambda: CONTROLLER.cancel_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("stats")
@_DB_PATH_OPTION
def tasks_stats(db_path: Path | None) -> None:
    """Show task counters."""

    _emit(lambda: CONTROLLER.stats(RunCommand(db_path=db_path)))


@tasks.command("logs")
@_DB_PATH_OPTION
@click.option("--task-id", type=int, required=True, help="Task id.")
@click.option(
    "--level",
    type=click.Choice(["debug", "info", "warning", "error", "critical"], case_sensitive=False),
    default=None,
    help="Only entries of this level.",
)
@click.option("--errors", "errors_only", is_flag=True, help="Only error and critical entries.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Newest entries only.")
def tasks_logs(
    db_path: Path | None,
    task_id: int,
    level: str | None,
    errors_only: bool,
    limit: int | None,
) -> None:
    """Print a task's log entries; failures include their traceback."""

    _emit(
        lambda: CONTROLLER.task_logs(
            TaskLogsCommand(
                db_path=db_path,
                task_id=task_id,
                level=level.lower() if level else None,
                errors_only=errors_only,
                limit=limit,
            ),
        ),
    )


@tasks.command("export-logs")
@_DB_PATH_OPTION
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_export_logs(db_path: Path | None, task_id: int) -> None:
    """Print all log entries of a task as plain text."""

    _emit(lambda: CONTROLLER.export_task_logs(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("prune")
@_DB_PATH_OPTION
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention window; defaults to TASK_ENGINE_TASK_RETENTION_DAYS.",
)
def tasks_prune(db_path: Path | None, older_than_days: int | None) -> None:
    """Delete old finished, failed and cancelled tasks."""

    _emit(
        lambda: CONTROLLER.prune(
            PruneCommand(db_path=db_path, older_than_days=older_than_days),
        ),
    )


@task_engine.group()
def workers() -> None:
    """Worker registry commands."""


@workers.command("discover")
@_DB_PATH_OPTION
def workers_discover(db_path: Path | None) -> None:
    """Register worker implementations that are not registered yet."""

    _emit(lambda: CONTROLLER.discover_workers(WorkersCommand(db_path=db_path)))


@workers.command("rescan")
@_DB_PATH_OPTION
def workers_rescan(db_path: Path | None) -> None:
    """Re-verify registered workers and fix drifted identifiers."""

    _emit(lambda: CONTROLLER.rescan_workers(WorkersCommand(db_path=db_path)))


@workers.command("clean")
@_DB_PATH_OPTION
def workers_clean(db_path: Path | None) -> None:
    """Delete workers whose implementation no longer loads."""

    _emit(lambda: CONTROLLER.clean_workers(WorkersCommand(db_path=db_path)))


@workers.command("list")
@_DB_PATH_OPTION
def workers_list(db_path: Path | None) -> None:
    """List registered workers with task counters."""

    _emit(lambda: CONTROLLER.list_workers(WorkersCommand(db_path=db_path)))


@workers.command("metrics")
@_DB_PATH_OPTION
@click.option("--worker", "identifier", default=None, help="Optional worker filter.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Only tasks created within this many hours.",
)
def workers_metrics(db_path: Path | None, identifier: str | None, hours: int) -> None:
    """Show per-worker success rate and durations."""

    _emit(
        lambda: CONTROLLER.worker_metrics(
            WorkerMetricsCommand(db_path=db_path, identifier=identifier, hours=hours),
        ),
    )


@workers.command("activate")
@_DB_PATH_OPTION
@click.argument("identifier")
def workers_activate(db_path: Path | None, identifier: str) -> None:
    """Activate a worker."""

    _emit(
        lambda: CONTROLLER.activate_worker(
            WorkerIdentifierCommand(db_path=db_path, identifier=identifier),
        ),
    )


@workers.command("deactivate")
@_DB_PATH_OPTION
@click.argument("identifier")
def workers_deactivate(db_path: Path | None, identifier: str) -> None:
    """Deactivate a worker."""

    _emit(
        lambda: CONTROLLER.deactivate_worker(
            WorkerIdentifierCommand(db_path=db_path, identifier=identifier),
        ),
    )


@workers.command("configure")
@_DB_PATH_OPTION
@click.argument("identifier")
@click.option(
    "--settings-json",
    required=True,
    help='Settings to merge, e.g. \'{"schedule": {"enabled": true, "type": "periodic"}}\'.',
)
def workers_configure(db_path: Path | None, identifier: str, settings_json: str) -> None:
    """Merge settings into a worker's stored settings."""

    _emit(
        lambda: CONTROLLER.configure_worker(
            ConfigureWorkerCommand(
                db_path=db_path,
                identifier=identifier,
                settings=parse_options((), settings_json),
            ),
        ),
    )


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (TaskEngineError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_engine()
