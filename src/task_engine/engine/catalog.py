"""Startup-time registration table of worker implementations.

Implementations are addressed by a reference string ``"module:QualName"``.
The catalog is filled once per process from the built-in workers, the
``task_engine.workers`` entry-point group and any extra modules named in
configuration. Resolution never imports arbitrary class names at run time;
a reference that is not in the catalog does not load.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from collections.abc import Callable, Iterable, Mapping
from importlib.metadata import entry_points
from typing import Any

from task_engine.engine.contracts import BaseWorker, is_concrete_worker_type
from task_engine.engine.errors import WorkerClassNotFoundError

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "task_engine.workers"
BUILTIN_WORKER_MODULES = (
    "task_engine.workers.demo",
    "task_engine.workers.command",
)

WorkerFactory = Callable[[Mapping[str, Any]], Any]


def implementation_reference(worker_type: type) -> str:
    return f"{worker_type.__module__}:{worker_type.__qualname__}"


class WorkerCatalog:
    """Maps implementation references to worker factories."""

    def __init__(self) -> None:
        self._factories: dict[str, WorkerFactory] = {}

    def __contains__(self, reference: object) -> bool:
        return reference in self._factories

    def __len__(self) -> int:
        return len(self._factories)

    def register(self, worker_type: type, *, reference: str | None = None) -> str:
        """Register a worker class; its constructor takes the settings mapping."""

        key = reference or implementation_reference(worker_type)
        self._factories[key] = worker_type
        return key

    def register_factory(self, reference: str, factory: WorkerFactory) -> None:
        self._factories[reference] = factory

    def unregister(self, reference: str) -> bool:
        """Remove an implementation from the running process."""

        return self._factories.pop(reference, None) is not None

    def references(self) -> list[str]:
        return sorted(self._factories)

    def load(self, reference: str | None) -> WorkerFactory:
        if not reference or reference not in self._factories:
            raise WorkerClassNotFoundError(reference)
        return self._factories[reference]

    def create(self, reference: str, settings: Mapping[str, Any] | None = None) -> Any:
        """Instantiate the implementation behind ``reference``."""

        factory = self.load(reference)
        try:
            return factory(dict(settings or {}))
        except Exception as exc:
            raise WorkerClassNotFoundError(reference, cause=exc) from exc

    def register_module(self, module_name: str) -> list[str]:
        """Register every concrete worker class defined in ``module_name``."""

        module = importlib.import_module(module_name)
        registered: list[str] = []
        for _, member in inspect.getmembers(module, inspect.isclass):
            if member.__module__ != module.__name__:
                continue
            if not issubclass(member, BaseWorker) or not is_concrete_worker_type(member):
                continue
            registered.append(self.register(member))
        return registered

    def register_modules(self, module_names: Iterable[str]) -> list[str]:
        registered: list[str] = []
        for module_name in module_names:
            try:
                registered.extend(self.register_module(module_name))
            except ImportError:
                logger.warning("Worker module %s could not be imported", module_name, exc_info=True)
        return registered

    def register_entry_points(self, group: str = ENTRY_POINT_GROUP) -> list[str]:
        """Register worker classes advertised by installed distributions."""

        registered: list[str] = []
        for entry_point in entry_points(group=group):
            try:
                loaded = entry_point.load()
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Worker entry point %s could not be loaded",
                    entry_point.value,
                    exc_info=True,
                )
                continue
            if not is_concrete_worker_type(loaded):
                logger.warning("Entry point %s is not a concrete worker class", entry_point.value)
                continue
            registered.append(self.register(loaded))
        return registered


def default_catalog(*, extra_modules: Iterable[str] = ()) -> WorkerCatalog:
    """Catalog with built-in workers, installed entry points and extra modules."""

    catalog = WorkerCatalog()
    catalog.register_modules(BUILTIN_WORKER_MODULES)
    catalog.register_entry_points()
    catalog.register_modules(extra_modules)
    logger.debug("Worker catalog holds %d implementation(s)", len(catalog))
    return catalog
