"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import pytest

from task_engine.config import LaunchSettings, ProgressSettings, Settings
from task_engine.engine.catalog import WorkerCatalog
from task_engine.engine.contracts import ActionContext, BaseWorker, action
from task_engine.engine.progress import ProgressTracker
from task_engine.engine.registry import WorkerRegistry
from task_engine.engine.repository import TaskRepository
from task_engine.engine.resolver import WorkerCache, WorkerResolver
from task_engine.engine.services import EngineService
from task_engine.storage.database import Database
from task_engine.workers.demo import DemoWorker


class EchoWorker(BaseWorker):
    """Records handled actions in the task result."""

    def identifier(self) -> str:
        return "echo"

    @action("sync_stock")
    def sync_stock(self, context: ActionContext) -> None:
        context.push_progress(progress=50, message="syncing | stock")
        context.finish(result={"handled": "sync_stock", "meta": context.meta})

    @action("import-csv")
    def import_csv(self, context: ActionContext) -> None:
        context.push_progress(progress=40, message="importing")

    @action("make")
    def make(self, context: ActionContext) -> None:
        context.push_progress(progress=30, message="making")


class BoomWorker(BaseWorker):
    """Handler raises on every run."""

    def identifier(self) -> str:
        return "boom"

    @action("make")
    def make(self, context: ActionContext) -> None:
        raise RuntimeError("kaboom from handler")


class ReportingWorker(BaseWorker):
    """Handler reports its own failure through the context."""

    def identifier(self) -> str:
        return "reporter"

    @action("make")
    def make(self, context: ActionContext) -> None:
        context.fail("upstream unavailable")


class AlwaysDueWorker(BaseWorker):
    """Periodic schedule that is due on every check."""

    def identifier(self) -> str:
        return str(self.get_config("identifier", "always_due"))

    def should_run_now(self, now: datetime) -> bool:
        return self.schedule().enabled


class AlwaysDueTwinWorker(AlwaysDueWorker):
    def identifier(self) -> str:
        return "always_due_twin"


class NotAWorker:
    """Loads fine but lacks the worker capabilities."""

    def __init__(self, settings: dict | None = None) -> None:
        self.settings = settings


@pytest.fixture()
def worker_types() -> dict[str, type]:
    return {
        "demo": DemoWorker,
        "echo": EchoWorker,
        "boom": BoomWorker,
        "reporter": ReportingWorker,
        "always_due": AlwaysDueWorker,
        "always_due_twin": AlwaysDueTwinWorker,
    }


@pytest.fixture()
def not_a_worker_type() -> type:
    return NotAWorker


@pytest.fixture()
def catalog(worker_types: dict[str, type]) -> WorkerCatalog:
    catalog = WorkerCatalog()
    for worker_type in worker_types.values():
        catalog.register(worker_type)
    return catalog


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[Database]:
    database = Database(tmp_path / "engine.db")
    database.init_schema()
    yield database
    database.close()


@pytest.fixture()
def repository(database: Database) -> TaskRepository:
    return TaskRepository(database)


@pytest.fixture()
def progress(tmp_path: Path) -> ProgressTracker:
    return ProgressTracker(tmp_path / "progress")


@pytest.fixture()
def registry(database: Database, catalog: WorkerCatalog) -> WorkerRegistry:
    return WorkerRegistry(database, catalog)


@pytest.fixture()
def resolver(registry: WorkerRegistry, catalog: WorkerCatalog) -> WorkerResolver:
    return WorkerResolver(registry, catalog, WorkerCache())


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return replace(
        Settings(),
        db_path=tmp_path / "engine.db",
        progress=ProgressSettings(root=tmp_path / "progress"),
        launch=LaunchSettings(enabled=False, methods=("inline",)),
    )


@pytest.fixture()
def service(settings: Settings, database: Database, catalog: WorkerCatalog) -> EngineService:
    return EngineService(settings=settings, database=database, catalog=catalog)


@pytest.fixture()
def activate(registry: WorkerRegistry):
    """Discover catalog workers and activate the given identifiers."""

    def _activate(*identifiers: str, settings: dict | None = None) -> None:
        registry.discover()
        for identifier in identifiers:
            assert registry.activate(identifier)
            if settings is not None:
                registry.update_settings(identifier, settings)

    return _activate
