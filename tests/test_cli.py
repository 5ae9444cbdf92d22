from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from task_engine.main import task_engine

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("CLI"),
]


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("TASK_ENGINE_PROGRESS_DIR", str(tmp_path / "progress"))
    monkeypatch.setenv("TASK_ENGINE_LAUNCH_ENABLED", "false")
    monkeypatch.delenv("TASK_ENGINE_WORKER_MODULES", raising=False)
    return tmp_path / "cli.db"


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(task_engine, list(args), catch_exceptions=False)


def test_cli_create_run_and_inspect(db_path: Path, tmp_path: Path) -> None:
    runner = CliRunner()

    discover = _invoke(runner, "workers", "discover", "--db-path", str(db_path))
    assert discover.exit_code == 0, discover.output
    assert "Discovered workers:" in discover.output
    assert "demo (task_engine.workers.demo:DemoWorker)" in discover.output

    activate = _invoke(runner, "workers", "activate", "demo", "--db-path", str(db_path))
    assert activate.exit_code == 0, activate.output
    assert "Worker activated: demo" in activate.output

    create = _invoke(
        runner,
        "tasks",
        "create",
        "--db-path",
        str(db_path),
        "--worker",
        "demo",
        "--option",
        "steps=2",
        "--priority",
        "high",
        "--no-launch",
    )
    assert create.exit_code == 0, create.output
    assert "Task created: 1" in create.output
    assert "status=queued" in create.output

    run = _invoke(runner, "run", "--db-path", str(db_path))
    assert run.exit_code == 0, run.output
    assert "Driver pass completed:" in run.output
    assert "  processed=1" in run.output
    assert "  finished=1" in run.output

    inspect = _invoke(runner, "tasks", "inspect", "--db-path", str(db_path), "--task-id", "1")
    assert inspect.exit_code == 0, inspect.output
    assert "Status: finished" in inspect.output
    assert "Priority: high" in inspect.output
    assert "Attempts: 1/3" in inspect.output
    assert "claimed queued -> running" in inspect.output

    result = _invoke(runner, "tasks", "result", "--db-path", str(db_path), "--task-id", "1")
    assert result.exit_code == 0, result.output
    assert json.loads(result.output.strip()) == {"steps": 2}

    progress = _invoke(runner, "tasks", "progress", "--db-path", str(db_path), "--task-id", "1")
    assert progress.exit_code == 0, progress.output
    snapshot = json.loads(progress.output.strip())
    assert snapshot["status"] == "finished"
    assert snapshot["progress"] == 100

    listing = _invoke(runner, "tasks", "list", "--db-path", str(db_path), "--status", "finished")
    assert listing.exit_code == 0, listing.output
    assert "Tasks: 1" in listing.output

    stats = _invoke(runner, "tasks", "stats", "--db-path", str(db_path))
    assert stats.exit_code == 0, stats.output
    assert "  finished=1" in stats.output
    assert "Active tasks: 0" in stats.output


def test_cli_configure_and_list_workers(db_path: Path) -> None:
    runner = CliRunner()
    _invoke(runner, "workers", "discover", "--db-path", str(db_path))

    configure = _invoke(
        runner,
        "workers",
        "configure",
        "demo",
        "--db-path",
        str(db_path),
        "--settings-json",
        '{"steps": 4}',
    )
    assert configure.exit_code == 0, configure.output
    assert "Worker settings saved: demo" in configure.output
    assert '{"steps": 4}' in configure.output

    listing = _invoke(runner, "workers", "list", "--db-path", str(db_path))
    assert listing.exit_code == 0, listing.output
    assert "demo active=no loadable=yes title='Demo worker'" in listing.output

    deactivate = _invoke(runner, "workers", "deactivate", "demo", "--db-path", str(db_path))
    assert deactivate.exit_code == 0, deactivate.output
    assert "Worker deactivated: demo" in deactivate.output


def test_cli_retry_and_cancel(db_path: Path) -> None:
    runner = CliRunner()
    _invoke(runner, "workers", "discover", "--db-path", str(db_path))
    _invoke(runner, "workers", "activate", "demo", "--db-path", str(db_path))
    create_args = ["tasks", "create", "--db-path", str(db_path), "--worker", "demo", "--no-launch"]

    _invoke(runner, *create_args, "--option", "fail=1", "--option", "fail_message=disk full")
    _invoke(runner, "run", "--db-path", str(db_path))

    inspect = _invoke(runner, "tasks", "inspect", "--db-path", str(db_path), "--task-id", "1")
    assert "Status: failed" in inspect.output
    assert "disk full" in inspect.output
    assert "Can retry: yes" in inspect.output

    retry = _invoke(runner, "tasks", "retry", "--db-path", str(db_path), "--task-id", "1")
    assert retry.exit_code == 0, retry.output
    assert "Task re-queued: 1 -> 2" in retry.output

    cancel = _invoke(runner, "tasks", "cancel", "--db-path", str(db_path), "--task-id", "2")
    assert cancel.exit_code == 0, cancel.output
    assert "Task cancelled: 2" in cancel.output

    prune = _invoke(
        runner,
        "tasks",
        "prune",
        "--db-path",
        str(db_path),
        "--older-than-days",
        "30",
    )
    assert prune.exit_code == 0, prune.output
    assert "Pruned tasks: 0" in prune.output


def test_cli_reports_errors_without_traceback(db_path: Path) -> None:
    runner = CliRunner()
    _invoke(runner, "workers", "discover", "--db-path", str(db_path))

    missing_task = _invoke(runner, "tasks", "result", "--db-path", str(db_path), "--task-id", "99")
    assert missing_task.exit_code == 1
    assert "Task not found: 99" in missing_task.output

    inactive = _invoke(
        runner,
        "tasks",
        "create",
        "--db-path",
        str(db_path),
        "--worker",
        "demo",
        "--no-launch",
    )
    assert inactive.exit_code == 1
    assert "not found or inactive" in inactive.output

    bad_option = _invoke(
        runner,
        "tasks",
        "create",
        "--db-path",
        str(db_path),
        "--worker",
        "demo",
        "--option",
        "steps",
    )
    assert bad_option.exit_code == 1
    assert "Invalid option" in bad_option.output

    unknown_worker = _invoke(runner, "workers", "activate", "nope", "--db-path", str(db_path))
    assert unknown_worker.exit_code == 1
    assert "Worker not found: nope" in unknown_worker.output


def test_cli_task_logs_and_worker_metrics(db_path: Path) -> None:
    runner = CliRunner()
    _invoke(runner, "workers", "discover", "--db-path", str(db_path))
    _invoke(runner, "workers", "activate", "demo", "--db-path", str(db_path))
    for extra in ((), ("--option", "fail=yes")):
        created = _invoke(
            runner,
            "tasks",
            "create",
            "--db-path",
            str(db_path),
            "--worker",
            "demo",
            "--option",
            "steps=1",
            *extra,
            "--no-launch",
        )
        assert created.exit_code == 0, created.output
    run = _invoke(runner, "run", "--db-path", str(db_path))
    assert run.exit_code == 0, run.output

    logs = _invoke(runner, "tasks", "logs", "--db-path", str(db_path), "--task-id", "1")
    assert logs.exit_code == 0, logs.output
    assert "Log entries: 3" in logs.output
    assert "[INFO] Task created" in logs.output
    assert "[INFO] Task finished" in logs.output

    errors = _invoke(
        runner,
        "tasks",
        "logs",
        "--db-path",
        str(db_path),
        "--task-id",
        "2",
        "--errors",
    )
    assert errors.exit_code == 0, errors.output
    assert "Log entries: 1" in errors.output
    assert "[ERROR] Failed @ demo.py:" in errors.output
    assert "    Traceback (most recent call last):" in errors.output
    assert "RuntimeError: Demo failure requested" in errors.output

    exported = _invoke(runner, "tasks", "export-logs", "--db-path", str(db_path), "--task-id", "2")
    assert exported.exit_code == 0, exported.output
    assert "[INFO] Task started" in exported.output

    metrics = _invoke(runner, "workers", "metrics", "--db-path", str(db_path))
    assert metrics.exit_code == 0, metrics.output
    assert "Worker metrics (last 24h): 1" in metrics.output
    assert "  demo tasks=2 finished=1 failed=1 success_rate=50.00%" in metrics.output

    missing = _invoke(runner, "tasks", "logs", "--db-path", str(db_path), "--task-id", "99")
    assert missing.exit_code == 1
    assert "Task not found: 99" in missing.output
