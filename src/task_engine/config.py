"""Runtime configuration for the task engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from task_engine.engine.launcher import DEFAULT_LAUNCH_METHODS

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class ProgressSettings:
    """Filesystem progress channel settings."""

    root: Path = Path(".task_engine/progress")
    snapshot_ttl_hours: int = 24
    temp_ttl_hours: int = 10
    history_lines: int = 50


@dataclass(slots=True)
class ResolverSettings:
    """Worker resolution cache settings."""

    cache_ttl_seconds: int = 300
    cache_max_size: int = 100


@dataclass(slots=True)
class DriverSettings:
    """Execution driver settings."""

    batch_limit: int = 0
    task_retention_days: int = 30
    default_max_attempts: int = 3


@dataclass(slots=True)
class LaunchSettings:
    enabled: bool = True
    methods: tuple[str, ...] = DEFAULT_LAUNCH_METHODS


@dataclass(slots=True)
class DiscoverySettings:
    """Where worker implementations come from."""

    worker_modules: tuple[str, ...] = ()
    excluded_prefixes: tuple[str, ...] = ()


@dataclass(slots=True)
class SecuritySettings:
    """Command execution policy."""

    enabled: bool = True
    log_executions: bool = True
    dangerous_commands: tuple[str, ...] = ("rm", "dd", "mkfs", "shutdown", "reboot")
    confirmation_required: tuple[str, ...] = ("git", "pip")
    whitelist: tuple[str, ...] = ()
    blacklist: tuple[str, ...] = ()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".task_engine.db")
    environment: str = "production"
    log_level: str = "WARNING"
    progress: ProgressSettings = field(default_factory=ProgressSettings)
    resolver: ResolverSettings = field(default_factory=ResolverSettings)
    driver: DriverSettings = field(default_factory=DriverSettings)
    launch: LaunchSettings = field(default_factory=LaunchSettings)
    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``TASK_ENGINE_*`` variables."""

        security_defaults = SecuritySettings()
        return cls(
            db_path=db_path or Path(os.getenv("TASK_ENGINE_DB_PATH", ".task_engine.db")),
            environment=os.getenv("TASK_ENGINE_ENV", "production").strip().lower(),
            log_level=os.getenv("TASK_ENGINE_LOG_LEVEL", "WARNING").strip().upper(),
            progress=ProgressSettings(
                root=Path(os.getenv("TASK_ENGINE_PROGRESS_DIR", ".task_engine/progress")),
                snapshot_ttl_hours=int(os.getenv("TASK_ENGINE_PROGRESS_TTL_HOURS", "24")),
                temp_ttl_hours=int(os.getenv("TASK_ENGINE_PROGRESS_TEMP_TTL_HOURS", "10")),
                history_lines=int(os.getenv("TASK_ENGINE_PROGRESS_HISTORY_LINES", "50")),
            ),
            resolver=ResolverSettings(
                cache_ttl_seconds=int(os.getenv("TASK_ENGINE_CACHE_TTL_SECONDS", "300")),
                cache_max_size=int(os.getenv("TASK_ENGINE_CACHE_MAX_SIZE", "100")),
            ),
            driver=DriverSettings(
                batch_limit=int(os.getenv("TASK_ENGINE_BATCH_LIMIT", "0")),
                task_retention_days=int(os.getenv("TASK_ENGINE_TASK_RETENTION_DAYS", "30")),
                default_max_attempts=int(os.getenv("TASK_ENGINE_MAX_ATTEMPTS", "3")),
            ),
            launch=LaunchSettings(
                enabled=_env_bool("TASK_ENGINE_LAUNCH_ENABLED", default=True),
                methods=_env_list("TASK_ENGINE_LAUNCH_METHODS", default=DEFAULT_LAUNCH_METHODS),
            ),
            discovery=DiscoverySettings(
                worker_modules=_env_list("TASK_ENGINE_WORKER_MODULES"),
                excluded_prefixes=_env_list("TASK_ENGINE_DISCOVERY_EXCLUDE"),
            ),
            security=SecuritySettings(
                enabled=_env_bool("TASK_ENGINE_SECURITY_ENABLED", default=True),
                log_executions=_env_bool("TASK_ENGINE_SECURITY_LOG_EXECUTIONS", default=True),
                dangerous_commands=_env_list(
                    "TASK_ENGINE_SECURITY_DANGEROUS_COMMANDS",
                    default=security_defaults.dangerous_commands,
                ),
                confirmation_required=_env_list(
                    "TASK_ENGINE_SECURITY_CONFIRMATION_REQUIRED",
                    default=security_defaults.confirmation_required,
                ),
                whitelist=_env_list("TASK_ENGINE_SECURITY_WHITELIST"),
                blacklist=_env_list("TASK_ENGINE_SECURITY_BLACKLIST"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot work with."""

        if self.log_level not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"TASK_ENGINE_LOG_LEVEL must be one of {sorted(_VALID_LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.progress.snapshot_ttl_hours <= 0:
            raise ValueError("TASK_ENGINE_PROGRESS_TTL_HOURS must be > 0.")
        if self.progress.temp_ttl_hours <= 0:
            raise ValueError("TASK_ENGINE_PROGRESS_TEMP_TTL_HOURS must be > 0.")
        if self.progress.history_lines <= 0:
            raise ValueError("TASK_ENGINE_PROGRESS_HISTORY_LINES must be > 0.")
        if self.resolver.cache_ttl_seconds < 0:
            raise ValueError("TASK_ENGINE_CACHE_TTL_SECONDS must be >= 0.")
        if self.resolver.cache_max_size < 1:
            raise ValueError("TASK_ENGINE_CACHE_MAX_SIZE must be >= 1.")
        if self.driver.batch_limit < 0:
            raise ValueError("TASK_ENGINE_BATCH_LIMIT must be >= 0.")
        if self.driver.task_retention_days < 0:
            raise ValueError("TASK_ENGINE_TASK_RETENTION_DAYS must be >= 0.")
        if self.driver.default_max_attempts < 1:
            raise ValueError("TASK_ENGINE_MAX_ATTEMPTS must be >= 1.")
        unknown = [method for method in self.launch.methods if method not in DEFAULT_LAUNCH_METHODS]
        if unknown:
            raise ValueError(
                f"TASK_ENGINE_LAUNCH_METHODS contains unknown method(s): {', '.join(unknown)}.",
            )


def _env_list(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
