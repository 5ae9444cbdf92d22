from __future__ import annotations

import logging
import os
import time
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from task_engine.engine.catalog import WorkerCatalog
from task_engine.engine.contracts import ActionContext, BaseWorker, action
from task_engine.engine.driver import ExecutionDriver
from task_engine.engine.models import TaskCreate, TaskStatus
from task_engine.engine.progress import ProgressTracker
from task_engine.engine.repository import TaskRepository
from task_engine.engine.resolver import WorkerResolver
from task_engine.storage.common import utc_now

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Execution Driver"),
]


@pytest.fixture()
def driver(
    repository: TaskRepository,
    resolver: WorkerResolver,
    progress: ProgressTracker,
) -> ExecutionDriver:
    return ExecutionDriver(repository=repository, resolver=resolver, progress=progress)


def _enqueue(repository: TaskRepository, identifier: str, action: str = "make", **fields) -> int:
    return repository.enqueue(TaskCreate(identifier=identifier, action=action, **fields)).task_id


def test_queued_task_runs_to_finished(
    driver: ExecutionDriver,
    repository: TaskRepository,
    progress: ProgressTracker,
    activate,
) -> None:
    activate("demo")
    task_id = _enqueue(repository, "demo", meta={"steps": 3})

    summary = driver.run_once()

    assert summary.to_dict() == {
        "scheduled": 0,
        "processed": 1,
        "finished": 1,
        "failed": 0,
        "skipped": 0,
        "cleaned_files": 0,
    }
    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.FINISHED
    assert task.progress == 100
    assert task.result == {"steps": 3}
    assert task.attempts == 1

    snapshot = progress.read_current(task_id)
    assert snapshot is not None
    assert snapshot.status == "finished"
    assert snapshot.progress == 100
    assert progress.read_history(task_id)[-2:] == ["Step 3/3", "Completed 3 step(s)"]


def test_handler_error_fails_task_with_location(
    driver: ExecutionDriver,
    repository: TaskRepository,
    activate,
    caplog: pytest.LogCaptureFixture,
) -> None:
    activate("boom")
    task_id = _enqueue(repository, "boom", max_attempts=3)

    with caplog.at_level(logging.ERROR, logger="task_engine.engine.driver"):
        summary = driver.run_once()

    assert summary.failed == 1
    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.message is not None
    assert task.message.startswith("Failed @ conftest.py:")
    assert "kaboom from handler" in task.message
    assert task.attempts == 1
    assert task.can_retry() is True
    assert "handler_error" in caplog.text


def test_retry_until_attempts_are_exhausted(
    driver: ExecutionDriver,
    repository: TaskRepository,
    activate,
) -> None:
    activate("boom")
    first = _enqueue(repository, "boom", max_attempts=2)
    driver.run_once()

    retried = repository.retry_task(task_id=first)
    driver.run_once()

    task = repository.get_task(task_id=retried.task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 2
    assert task.can_retry() is False


@pytest.mark.parametrize(
    ("action", "expected_result"),
    [
        ("sync_stock", {"handled": "sync_stock", "meta": {"sku": "A-1"}}),
        ("sync-stock", {"handled": "sync_stock", "meta": {"sku": "A-1"}}),
        ("import_csv", None),
        ("Import CSV", None),
    ],
)
def test_action_names_map_to_handlers(
    driver: ExecutionDriver,
    repository: TaskRepository,
    activate,
    action: str,
    expected_result: object,
) -> None:
    activate("echo")
    task_id = _enqueue(repository, "echo", action=action, meta={"sku": "A-1"})

    driver.run_once()

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.FINISHED
    assert task.result == expected_result


def test_unknown_action_fails_task(
    driver: ExecutionDriver,
    repository: TaskRepository,
    activate,
) -> None:
    activate("echo")
    task_id = _enqueue(repository, "echo", action="delete_everything")

    summary = driver.run_once()

    task = repository.get_task(task_id=task_id)
    assert summary.failed == 1
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert "no handler for action 'delete_everything' (DeleteEverything)" in (task.message or "")


def test_handler_reported_failure_is_kept(
    driver: ExecutionDriver,
    repository: TaskRepository,
    progress: ProgressTracker,
    activate,
) -> None:
    activate("reporter")
    task_id = _enqueue(repository, "reporter")

    summary = driver.run_once()

    task = repository.get_task(task_id=task_id)
    assert summary.failed == 1
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.message == "upstream unavailable"
    snapshot = progress.read_current(task_id)
    assert snapshot is not None
    assert snapshot.status == "failed"


def test_unresolvable_worker_fails_task_without_attempt(
    driver: ExecutionDriver,
    repository: TaskRepository,
    activate,
) -> None:
    activate()
    task_id = _enqueue(repository, "demo")

    summary = driver.run_once()

    task = repository.get_task(task_id=task_id)
    assert (summary.processed, summary.failed) == (1, 1)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.message == "Worker 'demo' not found or inactive."
    assert task.attempts == 0


def test_one_failure_does_not_stop_the_pass(
    driver: ExecutionDriver,
    repository: TaskRepository,
    activate,
) -> None:
    activate("boom", "demo")
    failing = _enqueue(repository, "boom")
    passing = _enqueue(repository, "demo", meta={"steps": 1})

    summary = driver.run_once()

    assert (summary.processed, summary.finished, summary.failed) == (2, 1, 1)
    assert repository.get_task(task_id=failing).status == TaskStatus.FAILED
    assert repository.get_task(task_id=passing).status == TaskStatus.FINISHED


def test_task_claimed_elsewhere_is_skipped(
    driver: ExecutionDriver,
    repository: TaskRepository,
    activate,
) -> None:
    activate("demo")
    task_id = _enqueue(repository, "demo")
    stale_view = repository.get_task(task_id=task_id)
    assert stale_view is not None
    repository.mark_running(task_id=task_id)

    assert driver.execute(stale_view) is None
    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.RUNNING
    assert task.attempts == 1


def test_batch_limit_caps_processed_tasks(
    repository: TaskRepository,
    resolver: WorkerResolver,
    progress: ProgressTracker,
    activate,
) -> None:
    activate("echo")
    for _ in range(3):
        _enqueue(repository, "echo")
    driver = ExecutionDriver(
        repository=repository,
        resolver=resolver,
        progress=progress,
        batch_limit=2,
    )

    summary = driver.run_once()

    assert summary.processed == 2
    assert repository.count_by_status()["queued"] == 1


def test_garbage_collection_runs_only_when_idle(
    driver: ExecutionDriver,
    repository: TaskRepository,
    progress: ProgressTracker,
) -> None:
    progress.write({"id": 999, "status": "finished"})
    stamp = time.time() - 25 * 3600
    os.utime(progress.file(999), (stamp, stamp))
    waiting = _enqueue(repository, "demo", start_at=utc_now() + timedelta(hours=1))

    assert driver.run_once().cleaned_files == 0
    assert progress.file(999).exists()

    repository.mark_cancelled(task_id=waiting)

    assert driver.run_once().cleaned_files == 1
    assert not progress.file(999).exists()


class ExitingWorker(BaseWorker):
    def identifier(self) -> str:
        return "exiting"

    @action("make")
    def make(self, context: ActionContext) -> None:
        raise SystemExit(3)


class InterruptedWorker(BaseWorker):
    def identifier(self) -> str:
        return "interrupted"

    @action("make")
    def make(self, context: ActionContext) -> None:
        raise KeyboardInterrupt


class BrokenTableWorker(BaseWorker):
    def identifier(self) -> str:
        return "broken_table"

    def actions(self) -> dict:
        raise LookupError("dispatch table unavailable")


@pytest.fixture()
def register_worker(catalog: WorkerCatalog):
    def _register(*worker_types: type) -> None:
        for worker_type in worker_types:
            catalog.register(worker_type)

    return _register


def test_progress_failure_after_claim_fails_each_task(
    repository: TaskRepository,
    resolver: WorkerResolver,
    tmp_path: Path,
    activate,
) -> None:
    root = tmp_path / "not-a-directory"
    root.write_text("occupied", encoding="utf-8")
    driver = ExecutionDriver(
        repository=repository,
        resolver=resolver,
        progress=ProgressTracker(root),
    )
    activate("echo")
    first = _enqueue(repository, "echo")
    second = _enqueue(repository, "echo")

    summary = driver.run_once()

    assert (summary.processed, summary.failed) == (2, 2)
    for task_id in (first, second):
        task = repository.get_task(task_id=task_id)
        assert task is not None
        assert task.status == TaskStatus.FAILED
        assert task.message is not None
        assert task.message.startswith("Failed @ ")
    assert repository.count_active() == 0


def test_system_exit_in_handler_fails_task_and_pass_continues(
    driver: ExecutionDriver,
    repository: TaskRepository,
    register_worker,
    activate,
) -> None:
    register_worker(ExitingWorker)
    activate("exiting", "demo")
    exiting = _enqueue(repository, "exiting")
    passing = _enqueue(repository, "demo", meta={"steps": 1})

    summary = driver.run_once()

    assert (summary.processed, summary.finished, summary.failed) == (2, 1, 1)
    task = repository.get_task(task_id=exiting)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.message is not None
    assert task.message.startswith("Failed @ test_driver.py:")
    assert "SystemExit: 3" in task.message
    assert repository.get_task(task_id=passing).status == TaskStatus.FINISHED


def test_keyboard_interrupt_fails_task_then_propagates(
    driver: ExecutionDriver,
    repository: TaskRepository,
    register_worker,
    activate,
) -> None:
    register_worker(InterruptedWorker)
    activate("interrupted")
    task_id = _enqueue(repository, "interrupted")

    with pytest.raises(KeyboardInterrupt):
        driver.run_once()

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert "KeyboardInterrupt" in (task.message or "")


def test_failing_dispatch_table_fails_task(
    driver: ExecutionDriver,
    repository: TaskRepository,
    register_worker,
    activate,
) -> None:
    register_worker(BrokenTableWorker)
    activate("broken_table")
    task_id = _enqueue(repository, "broken_table")

    summary = driver.run_once()

    task = repository.get_task(task_id=task_id)
    assert summary.failed == 1
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert "dispatch table unavailable" in (task.message or "")


def test_unresolvable_task_owned_by_another_pass_is_left_alone(
    driver: ExecutionDriver,
    repository: TaskRepository,
    activate,
) -> None:
    activate()
    task_id = _enqueue(repository, "demo")
    stale_view = repository.get_task(task_id=task_id)
    assert stale_view is not None
    repository.mark_running(task_id=task_id)

    assert driver.execute(stale_view) is None
    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.RUNNING


def test_task_log_records_start_finish_and_failure(
    driver: ExecutionDriver,
    repository: TaskRepository,
    activate,
) -> None:
    activate("demo", "boom")
    passing = _enqueue(repository, "demo", meta={"steps": 1})
    failing = _enqueue(repository, "boom")

    driver.run_once()

    messages = [entry.message for entry in driver.task_log.logs(passing)]
    assert messages == ["Task started", "Task finished"]
    assert "duration_seconds" in driver.task_log.logs(passing)[-1].context

    errors = driver.task_log.error_logs(failing)
    assert len(errors) == 1
    assert errors[0].message.startswith("Failed @ conftest.py:")
    assert errors[0].context["reason"] == "handler_error"
    assert errors[0].context["location"].startswith("conftest.py:")
    assert "RuntimeError: kaboom from handler" in errors[0].context["trace"]
