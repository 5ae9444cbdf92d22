"""Shared SQLite database handle for the engine repositories."""

from __future__ import annotations

from pathlib import Path

from sqlmodel import Session

from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import build_sqlite_engine


class Database:
    """Owns the SQLAlchemy engine for one SQLite file."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def session(self) -> Session:
        return Session(self.engine)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()
