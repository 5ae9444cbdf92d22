"""Security policy for workers that execute external commands."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from task_engine.engine.errors import SecurityViolation

if TYPE_CHECKING:
    from task_engine.config import Settings

logger = logging.getLogger(__name__)

INJECTION_RE = re.compile(r"[;&|`$<>]")
PRODUCTION = "production"


@dataclass(slots=True)
class CommandSecurityPolicy:
    """Allow/deny rules applied before a command runs.

    Patterns accept ``*`` as a wildcard and must match the whole command name.
    """

    enabled: bool = True
    environment: str = PRODUCTION
    log_executions: bool = True
    dangerous_commands: tuple[str, ...] = ()
    confirmation_required: tuple[str, ...] = ()
    whitelist: tuple[str, ...] = ()
    blacklist: tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, settings: Settings) -> CommandSecurityPolicy:
        security = settings.security
        return cls(
            enabled=security.enabled,
            environment=settings.environment,
            log_executions=security.log_executions,
            dangerous_commands=security.dangerous_commands,
            confirmation_required=security.confirmation_required,
            whitelist=security.whitelist,
            blacklist=security.blacklist,
        )

    def validate(self, command: str, arguments: str = "", *, confirmed: bool = False) -> None:
        """Raise SecurityViolation when ``command`` may not run."""

        if not self.enabled:
            return

        command = command.strip()
        if INJECTION_RE.search(command) or INJECTION_RE.search(arguments):
            raise SecurityViolation(
                "Command contains forbidden characters.",
                command=command,
            )

        if _matches_any(command, self.blacklist):
            raise SecurityViolation(f"Command '{command}' is blacklisted.", command=command)

        if command in self.dangerous_commands:
            if self.environment == PRODUCTION:
                raise SecurityViolation(
                    f"Command '{command}' is forbidden in production.",
                    command=command,
                )
            if not confirmed:
                raise SecurityViolation(
                    f"Command '{command}' requires explicit confirmation (confirm=true).",
                    command=command,
                )

        if command in self.confirmation_required and not confirmed:
            logger.warning("Command %s executed without confirmation", command)

        if self.whitelist and not _matches_any(command, self.whitelist):
            raise SecurityViolation(
                f"Command '{command}' is not in the whitelist.",
                command=command,
            )

    def audit(
        self,
        *,
        command: str,
        arguments: str,
        task_id: int,
        started_by: int | None,
    ) -> None:
        if not self.log_executions:
            return
        logger.info(
            "Command execution: command=%s arguments=%s task_id=%d started_by=%s",
            command or "(default)",
            arguments,
            task_id,
            started_by,
        )


def matches_pattern(command: str, pattern: str) -> bool:
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.fullmatch(regex, command) is not None


def _matches_any(command: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(command, pattern) for pattern in patterns)
