from __future__ import annotations

import allure
import pytest

from task_engine.engine.catalog import WorkerCatalog, implementation_reference
from task_engine.engine.errors import (
    WorkerClassNotFoundError,
    WorkerInvalidInterfaceError,
    WorkerNotFoundError,
)
from task_engine.engine.registry import WorkerRegistry
from task_engine.engine.resolver import WorkerCache, WorkerResolver
from task_engine.storage.common import utc_now
from task_engine.storage.database import Database
from task_engine.storage.sqlmodel_models import WorkerRecord

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Worker Resolution"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _insert_worker_row(database: Database, *, identifier: str, implementation: str) -> None:
    now = utc_now()
    with database.session() as session:
        session.add(
            WorkerRecord(
                identifier=identifier,
                implementation=implementation,
                active=True,
                position=99,
                created_at=now,
                updated_at=now,
            ),
        )
        session.commit()


def test_cache_evicts_least_recently_used() -> None:
    cache = WorkerCache(max_size=2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)

    assert "a" in cache
    assert "b" not in cache
    assert "c" in cache
    assert cache.stats().evictions == 1


def test_cache_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = WorkerCache(ttl_seconds=300, clock=clock)
    cache.set("demo", "worker")

    clock.now += 299
    assert cache.get("demo") == "worker"
    clock.now += 2
    assert cache.get("demo") is None

    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.expirations == 1
    assert stats.size == 0


def test_resolve_active_worker_uses_local_then_shared_cache(
    resolver: WorkerResolver,
    activate,
) -> None:
    activate("demo")

    with resolver.request_scope():
        first = resolver.resolve_worker("demo")
        second = resolver.resolve_worker("demo")
        assert resolver.cache_stats()["local_size"] == 1

    assert first is second
    assert first.identifier() == "demo"
    assert resolver.cache_stats()["local_size"] == 0
    assert resolver.cache_stats()["size"] == 1


def test_deactivation_by_another_process_is_seen_after_ttl(
    database: Database,
    catalog: WorkerCatalog,
    activate,
) -> None:
    activate("demo")
    clock = FakeClock()
    resolver = WorkerResolver(
        WorkerRegistry(database, catalog),
        catalog,
        WorkerCache(ttl_seconds=300, clock=clock),
    )
    assert resolver.resolve_worker("demo").identifier() == "demo"

    WorkerRegistry(database, catalog).deactivate("demo")

    assert resolver.resolve_worker("demo").identifier() == "demo"
    clock.now = 10_000
    with pytest.raises(WorkerNotFoundError):
        resolver.resolve_worker("demo")


def test_request_scope_keeps_instances_until_it_ends(
    database: Database,
    catalog: WorkerCatalog,
    activate,
) -> None:
    activate("demo")
    clock = FakeClock()
    resolver = WorkerResolver(
        WorkerRegistry(database, catalog),
        catalog,
        WorkerCache(ttl_seconds=300, clock=clock),
    )

    with resolver.request_scope():
        first = resolver.resolve_worker("demo")
        WorkerRegistry(database, catalog).deactivate("demo")
        clock.now += 1_000
        with resolver.request_scope():
            assert resolver.resolve_worker("demo") is first

    with pytest.raises(WorkerNotFoundError):
        resolver.resolve_worker("demo")


def test_shared_cache_is_reused_by_a_new_resolver(
    registry: WorkerRegistry,
    catalog: WorkerCatalog,
    activate,
) -> None:
    activate("demo")
    cache = WorkerCache()
    WorkerResolver(registry, catalog, cache).resolve_worker("demo")
    registry.deactivate("demo")

    fresh = WorkerResolver(registry, catalog, cache)

    assert fresh.resolve_worker("demo").identifier() == "demo"
    with pytest.raises(WorkerNotFoundError):
        fresh.resolve_worker("demo", force_refresh=True)


def test_invalid_cached_value_is_evicted_and_reloaded(resolver: WorkerResolver, activate) -> None:
    activate("demo")
    resolver.cache.set("demo", object())

    worker = resolver.resolve_worker("demo")

    assert worker.identifier() == "demo"


def test_inactive_or_unknown_identifier_raises_not_found(
    resolver: WorkerResolver,
    activate,
) -> None:
    activate()

    with pytest.raises(WorkerNotFoundError):
        resolver.resolve_worker("demo")
    with pytest.raises(WorkerNotFoundError):
        resolver.resolve_worker("nope")


def test_unloadable_implementation_raises_class_not_found(
    resolver: WorkerResolver,
    database: Database,
) -> None:
    _insert_worker_row(database, identifier="ghost", implementation="missing.module:Ghost")

    with pytest.raises(WorkerClassNotFoundError):
        resolver.resolve_worker("ghost")


def test_contract_breaking_implementation_raises_invalid_interface(
    resolver: WorkerResolver,
    catalog: WorkerCatalog,
    database: Database,
    not_a_worker_type: type,
) -> None:
    reference = catalog.register(not_a_worker_type)
    _insert_worker_row(database, identifier="broken", implementation=reference)

    with pytest.raises(WorkerInvalidInterfaceError):
        resolver.resolve_worker("broken")
    assert implementation_reference(not_a_worker_type) == reference


def test_resolve_workers_batches_and_skips_failures(
    resolver: WorkerResolver,
    database: Database,
    activate,
) -> None:
    activate("demo", "echo")
    _insert_worker_row(database, identifier="ghost", implementation="missing.module:Ghost")
    resolver.resolve_worker("demo")

    resolved = resolver.resolve_workers(["demo", "echo", "ghost", "nope", "echo"])

    assert sorted(resolved) == ["demo", "echo"]
