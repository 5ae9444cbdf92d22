"""Worker resolution with a request-local map and a shared LRU/TTL cache."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any

from task_engine.engine.catalog import WorkerCatalog
from task_engine.engine.contracts import WorkerContract, satisfies_contract
from task_engine.engine.errors import (
    WorkerInvalidInterfaceError,
    WorkerNotFoundError,
    WorkerResolutionError,
)
from task_engine.engine.models import WorkerView
from task_engine.engine.registry import WorkerRegistry

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_CACHE_MAX_SIZE = 100


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = DEFAULT_CACHE_MAX_SIZE

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["hit_rate"] = round(self.hit_rate, 4)
        return payload


class WorkerCache:
    """Bounded least-recently-used cache with per-entry expiry."""

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("Cache max_size must be at least 1.")
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._stats = CacheStats(max_size=max_size)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            self._stats.expirations += 1
            self._stats.misses += 1
            return None
        self._entries.move_to_end(key)
        self._stats.hits += 1
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("Worker cache evicted %s", evicted)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            evictions=self._stats.evictions,
            expirations=self._stats.expirations,
            size=len(self._entries),
            max_size=self.max_size,
        )


class WorkerResolver:
    """Turns worker identifiers into contract-checked instances.

    Lookup order: the request-local map (only inside ``request_scope()``),
    then the shared cache, then one query for active registry rows. The
    local map is discarded when the scope ends, so registry changes made by
    other processes become visible once the shared entry expires.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        catalog: WorkerCatalog,
        cache: WorkerCache | None = None,
    ) -> None:
        self.registry = registry
        self.catalog = catalog
        self.cache = cache if cache is not None else WorkerCache()
        self._local: dict[str, WorkerContract] | None = None

    @contextmanager
    def request_scope(self) -> Iterator[None]:
        """Memoize resolutions for one request or driver pass; nested scopes share it."""

        if self._local is not None:
            yield
            return
        self._local = {}
        try:
            yield
        finally:
            self._local = None

    def resolve_worker(self, identifier: str, *, force_refresh: bool = False) -> WorkerContract:
        if force_refresh:
            self.clear_cache(identifier)
        else:
            cached = self._lookup_cached(identifier)
            if cached is not None:
                return cached

        rows = self.registry.get_rows([identifier], active_only=True)
        row = rows.get(identifier)
        if row is None:
            raise WorkerNotFoundError(identifier)
        worker = self._instantiate(row)
        self._remember(identifier, worker)
        return worker

    def resolve_workers(self, identifiers: Iterable[str]) -> dict[str, WorkerContract]:
        """Resolve several identifiers; cache misses share one store query.

        Identifiers that fail to resolve are logged and left out of the result.
        """

        resolved: dict[str, WorkerContract] = {}
        missing: list[str] = []
        for identifier in dict.fromkeys(identifiers):
            cached = self._lookup_cached(identifier)
            if cached is not None:
                resolved[identifier] = cached
            else:
                missing.append(identifier)

        if not missing:
            return resolved

        rows = self.registry.get_rows(missing, active_only=True)
        for identifier in missing:
            row = rows.get(identifier)
            if row is None:
                logger.warning("Worker %s not found or inactive", identifier)
                continue
            try:
                worker = self._instantiate(row)
            except WorkerResolutionError as exc:
                logger.warning("Worker %s could not be resolved: %s", identifier, exc)
                continue
            self._remember(identifier, worker)
            resolved[identifier] = worker
        return resolved

    def clear_cache(self, identifier: str | None = None) -> None:
        if identifier is None:
            if self._local is not None:
                self._local.clear()
            self.cache.clear()
            return
        if self._local is not None:
            self._local.pop(identifier, None)
        self.cache.delete(identifier)

    def cache_stats(self) -> dict[str, Any]:
        stats = self.cache.stats().to_dict()
        stats["local_size"] = len(self._local or {})
        return stats

    def _lookup_cached(self, identifier: str) -> WorkerContract | None:
        if self._local is not None:
            local = self._local.get(identifier)
            if local is not None:
                return local

        shared = self.cache.get(identifier)
        if shared is None:
            return None
        if not satisfies_contract(shared):
            logger.warning(
                "Evicting cached worker %s: %s does not satisfy the contract",
                identifier,
                type(shared).__name__,
            )
            self.cache.delete(identifier)
            return None
        if self._local is not None:
            self._local[identifier] = shared
        return shared

    def _instantiate(self, row: WorkerView) -> WorkerContract:
        instance = self.catalog.create(row.implementation, row.settings)
        if not satisfies_contract(instance):
            raise WorkerInvalidInterfaceError(row.implementation)
        return instance

    def _remember(self, identifier: str, worker: WorkerContract) -> None:
        if self._local is not None:
            self._local[identifier] = worker
        self.cache.set(identifier, worker)
