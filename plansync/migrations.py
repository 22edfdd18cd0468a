"""
Schema manager for the project and points tables.

Safe to run on every start: creates missing tables, adds columns that older
deployments lack without touching existing rows, and seeds the default
project. Everything runs in one transaction; any failure raises
SchemaMigrationError and the process should not start serving.
"""

from __future__ import annotations

import logging
from typing import List

from sqlalchemy import Column, inspect, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateColumn

from plansync.db import (
    DEFAULT_OPACITY,
    DEFAULT_PROJECT_ID,
    Base,
    PointRow,
    ProjectRow,
)
from plansync.errors import SchemaMigrationError

logger = logging.getLogger(__name__)


def add_column_sql(conn: Connection, column: Column) -> str:
    """Render ALTER TABLE ... ADD COLUMN for a model column on this dialect."""
    preparer = conn.dialect.identifier_preparer
    column_ddl = str(CreateColumn(column).compile(dialect=conn.dialect))
    for fk in column.foreign_keys:
        target = fk.column
        column_ddl += (
            f" REFERENCES {preparer.format_table(target.table)}"
            f" ({preparer.quote(target.name)})"
        )
        if fk.ondelete:
            column_ddl += f" ON DELETE {fk.ondelete}"
    return f"ALTER TABLE {preparer.format_table(column.table)} ADD COLUMN {column_ddl}"


def _add_missing_columns(conn: Connection) -> List[str]:
    inspector = inspect(conn)
    added: List[str] = []
    for table in Base.metadata.sorted_tables:
        existing = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in existing:
                continue
            logger.info(
                'Column "%s" not found in "%s". Adding it now...',
                column.name,
                table.name,
            )
            conn.exec_driver_sql(add_column_sql(conn, column))
            added.append(f"{table.name}.{column.name}")
    return added


def _seed_project(conn: Connection, project_id: str) -> None:
    project = ProjectRow.__table__
    found = conn.execute(
        select(project.c.id).where(project.c.id == project_id)
    ).first()
    if found is not None:
        return
    conn.execute(
        project.insert().values(id=project_id, point_schema=[], opacity=DEFAULT_OPACITY)
    )
    logger.info("Seeded project %r", project_id)


def _adopt_orphan_points(conn: Connection, project_id: str) -> int:
    points = PointRow.__table__
    result = conn.execute(
        update(points).where(points.c.project_id.is_(None)).values(project_id=project_id)
    )
    return result.rowcount or 0


def ensure_schema(engine: Engine, project_id: str = DEFAULT_PROJECT_ID) -> List[str]:
    """
    Create/upgrade the schema. Returns the "table.column" names that were added.
    """
    try:
        with engine.begin() as conn:
            Base.metadata.create_all(conn)
            added = _add_missing_columns(conn)
            _seed_project(conn, project_id)
            adopted = _adopt_orphan_points(conn, project_id)
            if adopted:
                logger.info("Assigned %d legacy points to project %r", adopted, project_id)
    except SQLAlchemyError as exc:
        logger.exception("Database schema migration failed")
        raise SchemaMigrationError(str(exc)) from exc
    logger.info("Database tables are ready.")
    return added
