"""Best-effort immediate start of a driver pass after a task is created."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_LAUNCH_METHODS = ("spawn", "shell", "defer", "inline")

DeferHook = Callable[[Callable[[], object]], None]


class AsyncLauncher:
    """Tries each configured launch method in order until one starts.

    Every method swallows its own failures; the periodic ``task-engine run``
    trigger picks up anything that was not launched here.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        db_path: Path,
        run_inline: Callable[[], object],
        methods: Sequence[str] = DEFAULT_LAUNCH_METHODS,
        defer_hook: DeferHook | None = None,
        python_executable: str | None = None,
        shell_path: str | None = None,
        popen: Callable[..., object] = subprocess.Popen,
    ) -> None:
        self.db_path = db_path
        self.run_inline = run_inline
        self.methods = tuple(methods)
        self.defer_hook = defer_hook
        self.python_executable = python_executable or sys.executable
        self.shell_path = shell_path if shell_path is not None else shutil.which("sh")
        self._popen = popen

    def command(self) -> list[str]:
        return [
            self.python_executable,
            "-m",
            "task_engine.main",
            "run",
            "--db-path",
            str(self.db_path),
        ]

    def launch(self) -> str | None:
        """Return the name of the method that started a pass, or None."""

        for method in self.methods:
            handler = getattr(self, f"_launch_{method}", None)
            if handler is None:
                logger.debug("Unknown launch method %s", method)
                continue
            try:
                started = handler()
            except Exception:  # noqa: BLE001
                logger.debug("Launch method %s failed", method, exc_info=True)
                continue
            if started:
                logger.debug("Driver pass launched via %s", method)
                return method
        return None

    def _launch_spawn(self) -> bool:
        self._popen(
            self.command(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
        )
        return True

    def _launch_shell(self) -> bool:
        if not self.shell_path:
            return False
        line = f"{shlex.join(self.command())} > /dev/null 2>&1 &"
        self._popen([self.shell_path, "-c", line], start_new_session=True, close_fds=True)
        return True

    def _launch_defer(self) -> bool:
        if self.defer_hook is None:
            return False
        self.defer_hook(self.run_inline)
        return True

    def _launch_inline(self) -> bool:
        self.run_inline()
        return True
