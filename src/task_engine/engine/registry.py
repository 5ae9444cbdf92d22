"""Persisted worker registry with discovery, rescan and orphan cleanup."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlmodel import Session, col, select

from task_engine.engine.catalog import WorkerCatalog
from task_engine.engine.contracts import satisfies_contract
from task_engine.engine.errors import WorkerNotFoundError, WorkerResolutionError
from task_engine.engine.models import WorkerView
from task_engine.storage.common import dump_json, load_json_object, to_utc_aware_datetime, utc_now
from task_engine.storage.database import Database
from task_engine.storage.sqlmodel_models import WorkerRecord

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """Worker rows in the store, kept in step with the implementation catalog."""

    def __init__(
        self,
        database: Database,
        catalog: WorkerCatalog,
        *,
        excluded_prefixes: Iterable[str] = (),
    ) -> None:
        self.database = database
        self.catalog = catalog
        self.excluded_prefixes = tuple(prefix for prefix in excluded_prefixes if prefix)

    def discover(self) -> list[WorkerView]:
        """Register catalog implementations that have no registry row yet."""

        registered = set(self._registered_implementations())
        created: list[WorkerView] = []
        for reference in self.catalog.references():
            if reference.startswith(self.excluded_prefixes):
                logger.debug("Skipping excluded worker implementation %s", reference)
                continue
            if reference in registered:
                continue
            worker = self.register_worker(reference)
            if worker is not None:
                created.append(worker)
        if created:
            logger.info("Discovered %d new worker(s)", len(created))
        return created

    def register_worker(self, reference: str) -> WorkerView | None:
        """Insert an inactive row for ``reference``; None when it cannot be registered."""

        try:
            instance = self.catalog.create(reference)
        except WorkerResolutionError:
            logger.warning("Worker implementation %s could not be instantiated", reference)
            return None
        if not satisfies_contract(instance):
            logger.warning("Worker implementation %s does not satisfy the contract", reference)
            return None

        identifier = instance.identifier()
        now = utc_now()
        with Session(self.database.engine) as session:
            existing = session.exec(
                select(WorkerRecord).where(WorkerRecord.identifier == identifier),
            ).one_or_none()
            if existing is not None:
                if existing.implementation != reference:
                    logger.warning(
                        "Worker identifier %s is already registered by %s; skipping %s",
                        identifier,
                        existing.implementation,
                        reference,
                    )
                    return None
                return _to_worker_view(existing)

            max_position = session.exec(select(func.max(WorkerRecord.position))).one()
            row = WorkerRecord(
                identifier=identifier,
                scope=instance.scope(),
                implementation=reference,
                active=False,
                position=(max_position or 0) + 1,
                settings_json="{}",
                hidden=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Registered worker %s (%s)", identifier, reference)
            return _to_worker_view(row)

    def rescan(self) -> list[WorkerView]:
        """Re-verify every row and correct drifted identifiers; return updated rows."""

        renamed: list[WorkerRecord] = []
        with Session(self.database.engine) as session:
            rows = session.exec(select(WorkerRecord).order_by(col(WorkerRecord.position))).all()
            taken = {row.identifier for row in rows}
            for row in rows:
                try:
                    instance = self.catalog.create(
                        row.implementation,
                        load_json_object(row.settings_json),
                    )
                except WorkerResolutionError as exc:
                    logger.warning("Rescan: worker %s does not load: %s", row.identifier, exc)
                    continue
                if not satisfies_contract(instance):
                    logger.warning("Rescan: worker %s does not satisfy the contract", row.identifier)
                    continue

                reported = instance.identifier()
                if reported == row.identifier:
                    continue
                if reported in taken:
                    logger.warning(
                        "Rescan: identifier %s reported by %s is already taken",
                        reported,
                        row.implementation,
                    )
                    continue
                logger.info("Rescan: worker %s renamed to %s", row.identifier, reported)
                taken.discard(row.identifier)
                taken.add(reported)
                row.identifier = reported
                row.updated_at = utc_now()
                session.add(row)
                renamed.append(row)
            session.commit()
            for row in renamed:
                session.refresh(row)
            return [_to_worker_view(row) for row in renamed]

    def clean_orphaned(self) -> int:
        """Delete rows whose implementation no longer resolves."""

        with Session(self.database.engine) as session:
            rows = session.exec(select(WorkerRecord)).all()
            orphaned = [row.id for row in rows if row.implementation not in self.catalog]
            if not orphaned:
                return 0
            session.exec(sa_delete(WorkerRecord).where(col(WorkerRecord.id).in_(orphaned)))
            session.commit()
        logger.info("Removed %d orphaned worker(s)", len(orphaned))
        return len(orphaned)

    def activate(self, identifier: str) -> bool:
        return self._set_active(identifier, active=True)

    def deactivate(self, identifier: str) -> bool:
        return self._set_active(identifier, active=False)

    def get_worker(self, identifier: str) -> WorkerView | None:
        with Session(self.database.engine) as session:
            row = session.exec(
                select(WorkerRecord).where(WorkerRecord.identifier == identifier),
            ).one_or_none()
            return _to_worker_view(row) if row is not None else None

    def list_workers(
        self,
        *,
        active_only: bool = False,
        include_hidden: bool = True,
    ) -> list[WorkerView]:
        with Session(self.database.engine) as session:
            statement = select(WorkerRecord)
            if active_only:
                statement = statement.where(col(WorkerRecord.active).is_(True))
            if not include_hidden:
                statement = statement.where(WorkerRecord.hidden == 0)
            statement = statement.order_by(
                col(WorkerRecord.position).asc(),
                col(WorkerRecord.identifier).asc(),
            )
            rows = session.exec(statement).all()
        return [_to_worker_view(row) for row in rows]

    def list_active_workers(self) -> list[WorkerView]:
        return self.list_workers(active_only=True)

    def get_rows(
        self,
        identifiers: Iterable[str],
        *,
        active_only: bool = True,
    ) -> dict[str, WorkerView]:
        """Fetch several worker rows with one query."""

        wanted = list(dict.fromkeys(identifiers))
        if not wanted:
            return {}
        with Session(self.database.engine) as session:
            statement = select(WorkerRecord).where(col(WorkerRecord.identifier).in_(wanted))
            if active_only:
                statement = statement.where(col(WorkerRecord.active).is_(True))
            rows = session.exec(statement).all()
        return {row.identifier: _to_worker_view(row) for row in rows}

    def update_settings(self, identifier: str, settings: Mapping[str, Any]) -> WorkerView:
        """Merge ``settings`` into the stored settings of a worker."""

        with Session(self.database.engine) as session:
            row = session.exec(
                select(WorkerRecord).where(WorkerRecord.identifier == identifier),
            ).one_or_none()
            if row is None:
                raise WorkerNotFoundError(identifier)
            merged = load_json_object(row.settings_json)
            merged.update(settings)
            row.settings_json = dump_json(merged) or "{}"
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker_view(row)

    def _set_active(self, identifier: str, *, active: bool) -> bool:
        with Session(self.database.engine) as session:
            row = session.exec(
                select(WorkerRecord).where(WorkerRecord.identifier == identifier),
            ).one_or_none()
            if row is None:
                return False
            row.active = active
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
        logger.info("Worker %s %s", identifier, "activated" if active else "deactivated")
        return True

    def _registered_implementations(self) -> list[str]:
        with Session(self.database.engine) as session:
            return list(session.exec(select(WorkerRecord.implementation)).all())


def _to_worker_view(row: WorkerRecord) -> WorkerView:
    return WorkerView(
        worker_id=row.id or 0,
        identifier=row.identifier,
        scope=row.scope,
        implementation=row.implementation,
        active=bool(row.active),
        position=row.position,
        settings=load_json_object(row.settings_json),
        hidden=row.hidden,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
