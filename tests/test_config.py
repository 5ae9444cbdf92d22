from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from task_engine.config import DriverSettings, LaunchSettings, ProgressSettings, Settings

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Configuration"),
]


def test_from_env_reads_task_engine_variables(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_ENGINE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TASK_ENGINE_ENV", "Development")
    monkeypatch.setenv("TASK_ENGINE_LOG_LEVEL", "info")
    monkeypatch.setenv("TASK_ENGINE_PROGRESS_DIR", str(tmp_path / "progress"))
    monkeypatch.setenv("TASK_ENGINE_PROGRESS_TTL_HOURS", "12")
    monkeypatch.setenv("TASK_ENGINE_CACHE_MAX_SIZE", "7")
    monkeypatch.setenv("TASK_ENGINE_BATCH_LIMIT", "5")
    monkeypatch.setenv("TASK_ENGINE_LAUNCH_ENABLED", "no")
    monkeypatch.setenv("TASK_ENGINE_LAUNCH_METHODS", "defer, inline")
    monkeypatch.setenv("TASK_ENGINE_WORKER_MODULES", "shop.workers, ,billing.workers")
    monkeypatch.setenv("TASK_ENGINE_SECURITY_WHITELIST", "cache:*")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.environment == "development"
    assert settings.log_level == "INFO"
    assert settings.progress.root == tmp_path / "progress"
    assert settings.progress.snapshot_ttl_hours == 12
    assert settings.resolver.cache_max_size == 7
    assert settings.driver.batch_limit == 5
    assert settings.launch.enabled is False
    assert settings.launch.methods == ("defer", "inline")
    assert settings.discovery.worker_modules == ("shop.workers", "billing.workers")
    assert settings.security.whitelist == ("cache:*",)
    assert settings.security.dangerous_commands == ("rm", "dd", "mkfs", "shutdown", "reboot")
    settings.validate()


def test_explicit_db_path_wins_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_ENGINE_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("TASK_ENGINE_LAUNCH_ENABLED", "maybe")

    with pytest.raises(ValueError, match="TASK_ENGINE_LAUNCH_ENABLED"):
        Settings.from_env()


def test_defaults_are_valid() -> None:
    Settings().validate()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (replace(Settings(), log_level="LOUD"), "TASK_ENGINE_LOG_LEVEL"),
        (
            replace(Settings(), progress=ProgressSettings(snapshot_ttl_hours=0)),
            "TASK_ENGINE_PROGRESS_TTL_HOURS",
        ),
        (
            replace(Settings(), driver=DriverSettings(default_max_attempts=0)),
            "TASK_ENGINE_MAX_ATTEMPTS",
        ),
        (
            replace(Settings(), driver=DriverSettings(batch_limit=-1)),
            "TASK_ENGINE_BATCH_LIMIT",
        ),
        (
            replace(Settings(), launch=LaunchSettings(methods=("inline", "carrier_pigeon"))),
            "carrier_pigeon",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
