"""Error taxonomy of the task engine."""

from __future__ import annotations


class TaskEngineError(RuntimeError):
    """Base class for engine errors surfaced to callers."""


class WorkerResolutionError(TaskEngineError):
    """A worker identifier could not be turned into a runnable instance."""


class WorkerNotFoundError(WorkerResolutionError):
    def __init__(self, identifier: str) -> None:
        super().__init__(f"Worker '{identifier}' not found or inactive.")
        self.identifier = identifier


class WorkerClassNotFoundError(WorkerResolutionError):
    def __init__(self, implementation: str | None, cause: BaseException | None = None) -> None:
        message = f"Worker implementation '{implementation}' not found."
        if cause is not None:
            message = f"{message} {cause}"
        super().__init__(message)
        self.implementation = implementation


class WorkerInvalidInterfaceError(WorkerResolutionError):
    def __init__(self, implementation: str) -> None:
        super().__init__(
            f"Worker implementation '{implementation}' does not satisfy the worker contract.",
        )
        self.implementation = implementation


class SecurityViolation(TaskEngineError):
    """Command execution blocked by the security policy."""

    def __init__(self, message: str, *, command: str | None = None) -> None:
        super().__init__(message)
        self.command = command


class TaskNotFoundError(TaskEngineError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTaskTransitionError(TaskEngineError):
    """Requested status change is not allowed from the current status."""


class InvalidTaskIdError(TaskEngineError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task ID must be greater than 0, got {task_id}.")
        self.task_id = task_id


class ProgressNotFoundError(TaskEngineError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Progress tracking not available for task {task_id}.")
        self.task_id = task_id


class TaskNotFinishedError(TaskEngineError):
    def __init__(self, task_id: int, status: str) -> None:
        super().__init__(f"Task {task_id} must be finished before retrieving its result (status={status}).")
        self.task_id = task_id


class ResultNotAvailableError(TaskEngineError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task {task_id} has no result artifact.")
        self.task_id = task_id
