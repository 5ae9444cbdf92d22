"""Worker that runs an external command and streams its output as progress."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections import deque
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from task_engine.config import Settings
from task_engine.engine.contracts import ActionContext, BaseWorker, action
from task_engine.engine.security import CommandSecurityPolicy

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 20
MAX_STREAMED_PROGRESS = 95

# First matching keyword wins; progress never moves backwards.
PROGRESS_KEYWORDS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("migrating",), 30),
    (("migrated",), 60),
    (("seeding",), 40),
    (("seeded",), 70),
    (("caching", "cache"), 50),
    (("clearing", "cleared"), 60),
    (("optimizing", "optimized"), 70),
    (("done", "completed"), 85),
    (("processing",), 45),
)


def estimate_progress(line: str, current: int) -> int:
    lowered = line.lower()
    for keywords, value in PROGRESS_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return max(current, value)
    return current


class CommandWorker(BaseWorker):
    """Runs ``[*base_command, *command, *arguments]`` under the security policy.

    Worker settings: ``base_command`` (string or list) and ``working_dir``.
    Task options: ``command``, ``arguments`` and ``confirm``.
    """

    def __init__(
        self,
        settings: Mapping[str, Any] | None = None,
        *,
        policy: CommandSecurityPolicy | None = None,
    ) -> None:
        super().__init__(settings)
        self._policy = policy

    def identifier(self) -> str:
        return "command"

    def icon(self) -> str:
        return "fa-terminal"

    def title(self) -> str:
        return "Command runner"

    def description(self) -> str:
        return "Executes a whitelisted external command and captures its output."

    @property
    def policy(self) -> CommandSecurityPolicy:
        if self._policy is None:
            self._policy = CommandSecurityPolicy.from_settings(Settings.from_env())
        return self._policy

    @action("make")
    def make(self, context: ActionContext) -> None:
        command = str(context.meta.get("command") or "").strip()
        arguments = str(context.meta.get("arguments") or "").strip()
        confirmed = _truthy(context.meta.get("confirm"))

        context.push_progress(progress=1, message="Validating command")
        self.policy.validate(command, arguments, confirmed=confirmed)
        self.policy.audit(
            command=command,
            arguments=arguments,
            task_id=context.task_id,
            started_by=context.task.started_by,
        )

        argv = [*self._base_command(), *shlex.split(command), *shlex.split(arguments)]
        if not argv:
            raise ValueError("Nothing to run: no base command and no command given.")

        working_dir = Path(self.get_config("working_dir") or Path.cwd())
        if not working_dir.is_dir():
            raise FileNotFoundError(f"Working directory not found: {working_dir}")

        context.push_progress(progress=10, message=f"Running: {shlex.join(argv)}")
        exit_code, output = self._run(argv, working_dir=working_dir, context=context)

        if exit_code != 0:
            tail = "\n".join(output[-OUTPUT_TAIL_LINES:])
            raise RuntimeError(f"Command exited with code {exit_code}: {tail}")

        context.finish(
            result={"exit_code": exit_code, "output": "\n".join(output)},
            message=f"Command finished: {command or argv[0]}",
        )

    def _run(
        self,
        argv: list[str],
        *,
        working_dir: Path,
        context: ActionContext,
    ) -> tuple[int, list[str]]:
        output: deque[str] = deque(maxlen=1000)
        progress = 10
        with subprocess.Popen(
            argv,
            cwd=working_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
        ) as process:
            if process.stdout is None:
                raise RuntimeError("Command output pipe is not available.")
            for raw_line in process.stdout:
                line = raw_line.strip()
                if len(line) < 2:
                    continue
                output.append(line)
                progress = estimate_progress(line, progress)
                context.push_progress(
                    progress=min(progress, MAX_STREAMED_PROGRESS),
                    message=line,
                )
            exit_code = process.wait()
        logger.debug("Command %s exited with %d", argv[0], exit_code)
        return exit_code, list(output)

    def _base_command(self) -> list[str]:
        raw = self.get_config("base_command", [])
        if isinstance(raw, str):
            return shlex.split(raw)
        return [str(part) for part in raw or []]


def _truthy(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
