from pathlib import Path

import allure
from sqlalchemy import inspect, text

from task_engine.storage.database import Database

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Storage"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    database = Database(tmp_path / "nested" / "migrations.db")
    database.init_schema()

    with database.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == "20261017_0002"

    tables = set(inspect(database.engine).get_table_names())
    assert {"workers", "tasks", "task_events", "task_logs"} <= tables

    task_columns = {column["name"] for column in inspect(database.engine).get_columns("tasks")}
    assert {
        "identifier",
        "action",
        "status",
        "meta_json",
        "result_json",
        "start_at",
        "attempts",
        "max_attempts",
        "priority",
        "progress",
    } <= task_columns
    database.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    database = Database(tmp_path / "twice.db")
    database.init_schema()
    database.init_schema()

    with database.engine.connect() as connection:
        rows = connection.execute(text("SELECT COUNT(*) FROM alembic_version")).scalar_one()
    assert rows == 1
    database.close()
