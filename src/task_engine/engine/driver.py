"""One batch pass: schedule, claim due tasks, execute them, clean up."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from task_engine.engine.contracts import (
    ActionContext,
    ActionFailure,
    ActionOutcome,
    WorkerContract,
    dispatch_action,
)
from task_engine.engine.errors import InvalidTaskTransitionError, WorkerResolutionError
from task_engine.engine.models import TaskView
from task_engine.engine.progress import ProgressTracker
from task_engine.engine.repository import TaskRepository
from task_engine.engine.resolver import WorkerResolver
from task_engine.engine.scheduler import Scheduler
from task_engine.engine.tasklog import TaskLogger
from task_engine.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DriverRunSummary:
    """Counters of one driver pass."""

    scheduled: int = 0
    processed: int = 0
    finished: int = 0
    failed: int = 0
    skipped: int = 0
    cleaned_files: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class ExecutionDriver:
    """Runs due tasks sequentially; one task's failure never stops the pass."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        resolver: WorkerResolver,
        progress: ProgressTracker,
        scheduler: Scheduler | None = None,
        task_log: TaskLogger | None = None,
        batch_limit: int = 0,
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self.progress = progress
        self.scheduler = scheduler or Scheduler(
            repository=repository,
            resolver=resolver,
            progress=progress,
        )
        self.task_log = task_log or TaskLogger(repository.database)
        self.batch_limit = batch_limit

    def run_once(self, now: datetime | None = None) -> DriverRunSummary:
        current = now or utc_now()
        summary = DriverRunSummary()

        with self.resolver.request_scope():
            summary.scheduled = self.scheduler.run(current)

            due = self.repository.list_due_tasks(now=current, limit=self.batch_limit)
            for task in due:
                outcome = self.execute(task)
                if outcome is None:
                    summary.skipped += 1
                    continue
                summary.processed += 1
                if outcome.ok:
                    summary.finished += 1
                else:
                    summary.failed += 1

        if self.repository.count_active() == 0:
            try:
                summary.cleaned_files = self.progress.collect_garbage()
            except OSError:
                logger.warning("Progress garbage collection failed", exc_info=True)

        logger.info(
            "Driver pass: scheduled=%d processed=%d finished=%d failed=%d skipped=%d",
            summary.scheduled,
            summary.processed,
            summary.finished,
            summary.failed,
            summary.skipped,
        )
        return summary

    def execute(self, task: TaskView) -> ActionOutcome | None:
        """Run one task; None when it was claimed elsewhere first.

        Everything after the claim runs inside a per-task boundary: any
        exception, including ``SystemExit``, fails the task and the pass goes
        on. ``KeyboardInterrupt`` fails the task and is then re-raised.
        """

        try:
            worker = self.resolver.resolve_worker(task.identifier)
        except WorkerResolutionError as exc:
            return self._fail_unresolved(task, str(exc))

        claimed = self.repository.mark_running(task_id=task.task_id)
        if claimed is None:
            logger.info("Task %d was claimed concurrently; skipping", task.task_id)
            return None

        try:
            outcome = self._run_claimed(worker, claimed)
        except KeyboardInterrupt as exc:
            self._record_failure(claimed, ActionOutcome.from_exception(exc))
            raise
        except (Exception, SystemExit) as exc:  # noqa: BLE001
            outcome = ActionOutcome.from_exception(exc)

        if outcome.ok:
            if not outcome.finalized:
                self._finish(claimed)
            finished = self.repository.get_task(task_id=claimed.task_id)
            duration = finished.duration_seconds if finished is not None else None
            self.task_log.info(
                claimed.task_id,
                "Task finished",
                {"duration_seconds": duration} if duration is not None else None,
            )
            return outcome

        self._record_failure(claimed, outcome)
        return outcome

    def _run_claimed(self, worker: WorkerContract, claimed: TaskView) -> ActionOutcome:
        self.task_log.info(
            claimed.task_id,
            "Task started",
            {
                "worker": claimed.identifier,
                "action": claimed.action,
                "attempt": claimed.attempts,
                "max_attempts": claimed.max_attempts,
            },
        )
        self.progress.init(
            {
                "id": claimed.task_id,
                "status": "running",
                "progress": 0,
                "message": f"Running {claimed.action}",
            },
        )
        context = ActionContext(task=claimed, repository=self.repository, progress=self.progress)
        return dispatch_action(worker, claimed.action, context)

    def _fail_unresolved(self, task: TaskView, message: str) -> ActionOutcome | None:
        """Fail a task whose worker cannot be resolved, unless another pass owns it."""

        try:
            self.repository.mark_failed(
                task_id=task.task_id,
                message=message,
                allowed_from=(task.status,),
            )
        except InvalidTaskTransitionError:
            logger.info(
                "Task %d left %s before it could be failed; skipping",
                task.task_id,
                task.status.value,
            )
            return None
        logger.error("Task %d: worker resolution failed: %s", task.task_id, message)
        self.task_log.error(task.task_id, message, {"reason": "worker_resolution"})
        self._write_progress({"id": task.task_id, "status": "failed", "message": message})
        return ActionOutcome.failure(ActionFailure.REPORTED, message, finalized=True)

    def _record_failure(self, task: TaskView, outcome: ActionOutcome) -> None:
        message = outcome.describe()
        reason = outcome.reason.value if outcome.reason else "unknown"
        logger.error(
            "Task %d (%s:%s) failed [%s]: %s",
            task.task_id,
            task.identifier,
            task.action,
            reason,
            message,
        )
        context: dict[str, object] = {"reason": reason}
        if outcome.location:
            context["location"] = outcome.location
        if outcome.trace:
            context["trace"] = outcome.trace
        self.task_log.error(task.task_id, message, context)
        if not outcome.finalized:
            self._fail(task, message)

    def _finish(self, task: TaskView) -> None:
        try:
            self.repository.mark_finished(task_id=task.task_id, message="Done")
        except InvalidTaskTransitionError:
            logger.warning("Task %d changed state before it could be finished", task.task_id)
            return
        self._write_progress(
            {"id": task.task_id, "status": "finished", "progress": 100, "message": "Done"},
        )

    def _fail(self, task: TaskView, message: str) -> None:
        try:
            self.repository.mark_failed(task_id=task.task_id, message=message)
        except InvalidTaskTransitionError:
            logger.warning("Task %d changed state before it could be failed", task.task_id)
        self._write_progress({"id": task.task_id, "status": "failed", "message": message})

    def _write_progress(self, payload: dict[str, object]) -> None:
        try:
            self.progress.write(payload)
        except OSError:
            logger.warning("Could not write progress for task %s", payload["id"], exc_info=True)
