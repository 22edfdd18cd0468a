"""
Project/points store for Postgres and an in-memory test implementation.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol

from sqlalchemy import (
    JSON,
    Column,
    Float,
    ForeignKey,
    String,
    Text,
    create_engine,
    delete,
    null,
    select,
    text,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from plansync.errors import InvalidFeatureError, ProjectStoreError
from plansync.features import (
    Properties,
    feature_collection,
    features_of,
    make_feature,
    split_feature,
    strip_id,
)

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_ID = "default"
DEFAULT_OPACITY = 0.7
SETTINGS_FIELDS = ("point_schema", "plan_corners", "opacity")


class ProjectStore(Protocol):
    """Interface for project and point persistence."""

    def initialize(self) -> None:
        ...

    def close(self) -> None:
        ...

    def fetch_snapshot(self) -> "ProjectSnapshot":
        ...

    def replace_plan(
        self,
        plan_data_url: str,
        width: Optional[float] = None,
        height: Optional[float] = None,
    ) -> "ProjectRecord":
        ...

    def update_settings(self, updates: Dict[str, Any]) -> "ProjectRecord":
        ...

    def upsert_point(
        self, point_id: str, properties: Properties, geometry: dict
    ) -> "PointRecord":
        ...

    def delete_point(self, point_id: str) -> bool:
        ...

    def import_project(
        self, project: Dict[str, Any], geojson_data: Optional[dict]
    ) -> "ProjectSnapshot":
        ...


@dataclass
class ProjectRecord:
    id: str = DEFAULT_PROJECT_ID
    plan_data_url: Optional[str] = None
    plan_width: Optional[float] = None
    plan_height: Optional[float] = None
    plan_corners: Any = None
    point_schema: list = field(default_factory=list)
    opacity: float = DEFAULT_OPACITY

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "plan_data_url": self.plan_data_url,
            "plan_width": self.plan_width,
            "plan_height": self.plan_height,
            "plan_corners": self.plan_corners,
            "point_schema": self.point_schema,
            "opacity": self.opacity,
        }


@dataclass
class PointRecord:
    id: str
    properties: Properties
    geometry: dict
    project_id: str = DEFAULT_PROJECT_ID

    def as_feature(self) -> dict:
        return make_feature(self.id, self.properties, self.geometry)


@dataclass
class ProjectSnapshot:
    project: ProjectRecord
    points: List[PointRecord] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "project": self.project.as_dict(),
            "geojsonData": feature_collection(
                point.as_feature() for point in self.points
            ),
        }


def settings_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only recognized settings fields; raise if none remain."""
    recognized = {
        key: value for key, value in (updates or {}).items() if key in SETTINGS_FIELDS
    }
    if not recognized:
        raise ValueError("No valid fields to update")
    if "point_schema" in recognized and recognized["point_schema"] is None:
        recognized["point_schema"] = []
    if "opacity" in recognized and recognized["opacity"] is None:
        recognized["opacity"] = DEFAULT_OPACITY
    return recognized


def imported_project_fields(project: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    project = project or {}
    if not isinstance(project, dict):
        raise ProjectStoreError("project must be an object")
    opacity = project.get("opacity")
    return {
        "plan_data_url": project.get("plan_data_url"),
        "plan_width": project.get("plan_width"),
        "plan_height": project.get("plan_height"),
        "plan_corners": project.get("plan_corners"),
        "point_schema": project.get("point_schema") or [],
        "opacity": DEFAULT_OPACITY if opacity is None else opacity,
    }


def parse_import_features(geojson_data: Optional[dict]) -> List[PointRecord]:
    """Convert an imported collection into point records, rejecting bad features."""
    records: List[PointRecord] = []
    seen: set[str] = set()
    for feature in features_of(geojson_data):
        point_id, properties, geometry = split_feature(feature)
        if point_id in seen:
            raise InvalidFeatureError(f"duplicate feature id {point_id!r}")
        seen.add(point_id)
        records.append(
            PointRecord(id=point_id, properties=properties, geometry=geometry)
        )
    return records


class InMemoryProjectStore:
    """
    Simple in-memory store for development and tests.

    Route handlers run in a thread pool, so every public method holds the
    lock; readers never see a half-applied plan replace or import.
    """

    def __init__(self):
        self.project = ProjectRecord()
        self.points: Dict[str, PointRecord] = {}
        self._lock = threading.RLock()

    def initialize(self) -> None:
        return None

    def close(self) -> None:
        return None

    def reset(self) -> None:
        """Restore the seeded default project and drop all points."""
        with self._lock:
            self.project = ProjectRecord()
            self.points.clear()

    def fetch_snapshot(self) -> ProjectSnapshot:
        with self._lock:
            points = [
                copy.deepcopy(self.points[point_id]) for point_id in sorted(self.points)
            ]
            return ProjectSnapshot(project=copy.deepcopy(self.project), points=points)

    def replace_plan(
        self,
        plan_data_url: str,
        width: Optional[float] = None,
        height: Optional[float] = None,
    ) -> ProjectRecord:
        with self._lock:
            self.project.plan_data_url = plan_data_url
            self.project.plan_width = width
            self.project.plan_height = height
            self.project.plan_corners = None
            self.points.clear()
            return copy.deepcopy(self.project)

    def update_settings(self, updates: Dict[str, Any]) -> ProjectRecord:
        values = settings_updates(updates)
        with self._lock:
            for key, value in values.items():
                setattr(self.project, key, copy.deepcopy(value))
            return copy.deepcopy(self.project)

    def upsert_point(
        self, point_id: str, properties: Properties, geometry: dict
    ) -> PointRecord:
        record = PointRecord(
            id=point_id,
            properties=copy.deepcopy(strip_id(properties)),
            geometry=copy.deepcopy(geometry),
        )
        with self._lock:
            self.points[point_id] = record
            return copy.deepcopy(record)

    def delete_point(self, point_id: str) -> bool:
        with self._lock:
            return self.points.pop(point_id, None) is not None

    def import_project(
        self, project: Dict[str, Any], geojson_data: Optional[dict]
    ) -> ProjectSnapshot:
        # Build the replacement state first so a bad feature leaves nothing applied.
        fields = imported_project_fields(project)
        records = parse_import_features(copy.deepcopy(geojson_data))
        with self._lock:
            self.project = ProjectRecord(id=self.project.id, **copy.deepcopy(fields))
            self.points = {record.id: record for record in records}
            return self.fetch_snapshot()


def normalize_database_url(database_url: str) -> str:
    """Map bare postgres URLs (as hosting platforms hand them out) to psycopg 3."""
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return "postgresql+psycopg://" + database_url[len(prefix):]
    return database_url


def _engine_options(database_url: str, ssl: bool) -> dict:
    url = make_url(database_url)
    backend = url.get_backend_name()
    if backend == "sqlite":
        options: dict = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            # A :memory: database lives in one connection; every thread must share it.
            options["poolclass"] = StaticPool
        return options
    options = {"pool_recycle": 1800}
    if ssl and backend == "postgresql":
        options["connect_args"] = {"sslmode": "require"}
    return options


class SqlProjectStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).

    Multi-statement writes (plan replace, import) run inside one transaction;
    any SQLAlchemy error rolls it back and surfaces as ProjectStoreError.
    """

    def __init__(self, database_url: str, *, ssl: bool = False):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlProjectStore")
        database_url = normalize_database_url(database_url)
        self.project_id = DEFAULT_PROJECT_ID
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            **_engine_options(database_url, ssl),
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )

    def initialize(self) -> None:
        """Bring the schema up to date and seed the default project."""
        from plansync.migrations import ensure_schema

        ensure_schema(self.engine, project_id=self.project_id)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        try:
            with self.Session.begin() as session:
                yield session
        except ProjectStoreError:
            logger.exception("Store operation %s failed", operation)
            raise
        except SQLAlchemyError as exc:
            logger.exception("Store operation %s failed", operation)
            raise ProjectStoreError(str(exc)) from exc

    def _load_project(self, session: Session) -> "ProjectRow":
        row = session.get(ProjectRow, self.project_id)
        if row is None:
            raise ProjectStoreError(f"project {self.project_id!r} does not exist")
        return row

    def _to_project_record(self, row: "ProjectRow") -> ProjectRecord:
        return ProjectRecord(
            id=row.id,
            plan_data_url=row.plan_data_url,
            plan_width=row.plan_width,
            plan_height=row.plan_height,
            plan_corners=row.plan_corners,
            point_schema=row.point_schema or [],
            opacity=DEFAULT_OPACITY if row.opacity is None else row.opacity,
        )

    def _to_point_record(self, row: "PointRow") -> PointRecord:
        return PointRecord(
            id=row.id,
            properties=row.properties or {},
            geometry=row.geometry,
            project_id=row.project_id,
        )

    def fetch_snapshot(self) -> ProjectSnapshot:
        with self._transaction("fetch_snapshot") as session:
            row = session.get(ProjectRow, self.project_id)
            project = (
                self._to_project_record(row)
                if row
                else ProjectRecord(id=self.project_id)
            )
            stmt = (
                select(PointRow)
                .where(PointRow.project_id == self.project_id)
                .order_by(PointRow.id.asc())
            )
            points = [
                self._to_point_record(point)
                for point in session.execute(stmt).scalars().all()
            ]
            return ProjectSnapshot(project=project, points=points)

    def replace_plan(
        self,
        plan_data_url: str,
        width: Optional[float] = None,
        height: Optional[float] = None,
    ) -> ProjectRecord:
        with self._transaction("replace_plan") as session:
            row = self._load_project(session)
            row.plan_data_url = plan_data_url
            row.plan_width = width
            row.plan_height = height
            row.plan_corners = null()
            session.execute(
                delete(PointRow).where(PointRow.project_id == self.project_id)
            )
            session.flush()
            session.refresh(row)
            return self._to_project_record(row)

    def update_settings(self, updates: Dict[str, Any]) -> ProjectRecord:
        values = settings_updates(updates)
        with self._transaction("update_settings") as session:
            session.execute(
                update(ProjectRow)
                .where(ProjectRow.id == self.project_id)
                .values(
                    **{
                        key: null() if value is None else value
                        for key, value in values.items()
                    }
                )
            )
            return self._to_project_record(self._load_project(session))

    def _upsert_statement(self, values: dict):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            return None
        stmt = insert(PointRow.__table__).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "project_id": stmt.excluded.project_id,
                "properties": stmt.excluded.properties,
                "geometry": stmt.excluded.geometry,
            },
        )

    def upsert_point(
        self, point_id: str, properties: Properties, geometry: dict
    ) -> PointRecord:
        stored = strip_id(properties)
        values = {
            "id": point_id,
            "project_id": self.project_id,
            "properties": stored,
            "geometry": geometry,
        }
        with self._transaction("upsert_point") as session:
            stmt = self._upsert_statement(values)
            if stmt is None:
                session.merge(PointRow(**values))
            else:
                session.execute(stmt)
        return PointRecord(id=point_id, properties=stored, geometry=geometry)

    def delete_point(self, point_id: str) -> bool:
        with self._transaction("delete_point") as session:
            result = session.execute(delete(PointRow).where(PointRow.id == point_id))
            return bool(result.rowcount)

    def import_project(
        self, project: Dict[str, Any], geojson_data: Optional[dict]
    ) -> ProjectSnapshot:
        fields = imported_project_fields(project)
        with self._transaction("import_project") as session:
            row = self._load_project(session)
            for key, value in fields.items():
                setattr(row, key, null() if value is None else value)
            session.execute(
                delete(PointRow).where(PointRow.project_id == self.project_id)
            )
            records = parse_import_features(geojson_data)
            for record in records:
                session.add(
                    PointRow(
                        id=record.id,
                        project_id=self.project_id,
                        properties=record.properties,
                        geometry=record.geometry,
                    )
                )
            session.flush()
            session.refresh(row)
            records.sort(key=lambda point: point.id)
            return ProjectSnapshot(project=self._to_project_record(row), points=records)


Base = declarative_base()

# JSONB on Postgres, plain JSON (TEXT affinity) elsewhere.
JsonType = JSON().with_variant(postgresql.JSONB(), "postgresql")


class ProjectRow(Base):
    __tablename__ = "project"

    id = Column(String(50), primary_key=True)
    plan_data_url = Column(Text, nullable=True)
    plan_width = Column(Float, nullable=True)
    plan_height = Column(Float, nullable=True)
    plan_corners = Column(JsonType, nullable=True)
    point_schema = Column(JsonType, nullable=True)
    opacity = Column(
        Float, nullable=True, default=DEFAULT_OPACITY, server_default=text("0.7")
    )


class PointRow(Base):
    __tablename__ = "points"

    id = Column(String(255), primary_key=True)
    project_id = Column(
        String(50), ForeignKey("project.id", ondelete="CASCADE"), nullable=True
    )
    properties = Column(JsonType, nullable=True)
    geometry = Column(JsonType, nullable=True)
