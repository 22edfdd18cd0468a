import unittest
from unittest.mock import patch

from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from plansync.db import PointRow, ProjectRow
from plansync.errors import SchemaMigrationError
from plansync.migrations import add_column_sql, ensure_schema

LEGACY_DDL = (
    """
    CREATE TABLE project (
        id VARCHAR(50) PRIMARY KEY,
        plan_data_url TEXT,
        plan_width NUMERIC,
        plan_height NUMERIC
    )
    """,
    """
    CREATE TABLE points (
        id VARCHAR(255) PRIMARY KEY,
        properties JSON,
        geometry JSON
    )
    """,
    "INSERT INTO project (id, plan_data_url) VALUES ('default', 'old.png')",
    """
    INSERT INTO points (id, properties, geometry)
    VALUES ('p1', '{"label": "Exit"}', '{"type": "Point", "coordinates": [1, 2]}')
    """,
)


def _memory_engine():
    return create_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


class EnsureSchemaTests(unittest.TestCase):
    def setUp(self):
        self.engine = _memory_engine()
        self.addCleanup(self.engine.dispose)

    def _project_rows(self):
        with self.engine.connect() as conn:
            return conn.exec_driver_sql(
                "SELECT id, plan_data_url, opacity FROM project"
            ).fetchall()

    def test_fresh_database(self):
        added = ensure_schema(self.engine)
        self.assertEqual(added, [])

        tables = set(inspect(self.engine).get_table_names())
        self.assertTrue({"project", "points"} <= tables)
        rows = self._project_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0][0], "default")
        self.assertAlmostEqual(rows[0][2], 0.7)

    def test_running_twice_is_harmless(self):
        ensure_schema(self.engine)
        self.assertEqual(ensure_schema(self.engine), [])
        self.assertEqual(len(self._project_rows()), 1)

    def test_legacy_schema_is_upgraded_in_place(self):
        with self.engine.begin() as conn:
            for statement in LEGACY_DDL:
                conn.exec_driver_sql(statement)

        added = ensure_schema(self.engine)

        self.assertCountEqual(
            added,
            [
                "project.plan_corners",
                "project.point_schema",
                "project.opacity",
                "points.project_id",
            ],
        )
        point_columns = {c["name"] for c in inspect(self.engine).get_columns("points")}
        self.assertIn("project_id", point_columns)

        rows = self._project_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0][1], "old.png")
        self.assertAlmostEqual(rows[0][2], 0.7)

        with self.engine.connect() as conn:
            point = conn.exec_driver_sql(
                "SELECT id, project_id FROM points"
            ).fetchall()
        self.assertEqual(point, [("p1", "default")])

    def test_failure_is_reported(self):
        error = OperationalError("INSERT", {}, Exception("disk full"))
        with patch("plansync.migrations._seed_project", side_effect=error):
            with self.assertRaises(SchemaMigrationError):
                ensure_schema(self.engine)

    def test_add_column_sql_includes_reference(self):
        with self.engine.connect() as conn:
            sql = add_column_sql(conn, PointRow.__table__.c.project_id)
            opacity_sql = add_column_sql(conn, ProjectRow.__table__.c.opacity)
        self.assertTrue(sql.startswith("ALTER TABLE points ADD COLUMN project_id"))
        self.assertIn("REFERENCES project (id)", sql)
        self.assertIn("ON DELETE CASCADE", sql)
        self.assertRegex(opacity_sql, r"DEFAULT \(?0\.7\)?")


if __name__ == "__main__":
    unittest.main()
