"""Idempotent index upgrades for existing SQLite databases."""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import MetaData, text
from sqlalchemy.engine import Engine

from ..models import unit as _unit_models  # noqa: F401  (registers the tables)
from .session import Base

# Only indexes are added here. ``Base.metadata.create_all`` builds missing
# tables with their full schema but never touches a table that already exists,
# so an index declared on a model later would otherwise never reach old files.


def _table_columns(engine: Engine, table: str) -> list[dict[str, object]]:
    """Fetch SQLite's description of a table so we know whether it exists."""

    with engine.connect() as conn:
        return conn.execute(text(f"PRAGMA table_info({table})")).mappings().all()


def _create_index_if_not_exists(engine: Engine, table: str, name: str, cols: Iterable[str], unique: bool = False) -> None:
    cols_sql = ", ".join(cols)
    unique_sql = "UNIQUE " if unique else ""
    with engine.begin() as conn:
        conn.execute(text(f"CREATE {unique_sql}INDEX IF NOT EXISTS {name} ON {table} ({cols_sql})"))


def run_migrations(engine: Engine, metadata: MetaData | None = None) -> list[str]:
    """Create every model-declared index missing from existing SQLite tables.

    Absent tables are skipped; ``create_all`` builds them fresh. Returns the
    names of the indexes that were checked, in table order.
    """

    if engine.dialect.name != "sqlite":
        return []

    checked: list[str] = []
    for table in (metadata or Base.metadata).sorted_tables:
        if not _table_columns(engine, table.name):
            continue
        for index in sorted(table.indexes, key=lambda item: item.name):
            _create_index_if_not_exists(
                engine,
                table.name,
                index.name,
                [column.name for column in index.columns],
                unique=bool(index.unique),
            )
            checked.append(index.name)
    return checked
