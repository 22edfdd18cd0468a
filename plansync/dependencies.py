"""
Dependency wiring for the FastAPI app.

The store and broadcaster are created once per application by create_app()
and kept on app.state; handlers receive them through these dependencies.
"""

from __future__ import annotations

import logging

from starlette.requests import HTTPConnection

from plansync.broadcast import ChangeBroadcaster
from plansync.config import Settings
from plansync.db import InMemoryProjectStore, ProjectStore, SqlProjectStore

logger = logging.getLogger(__name__)


def build_project_store(settings: Settings) -> ProjectStore:
    """Pick the store implementation for the given settings."""
    if settings.use_in_memory_backends or not settings.database_url:
        if not settings.use_in_memory_backends:
            logger.warning("DATABASE_URL is not set; data will not be persisted")
        return InMemoryProjectStore()
    return SqlProjectStore(settings.database_url, ssl=settings.database_ssl)


def get_project_store(conn: HTTPConnection) -> ProjectStore:
    return conn.app.state.store


def get_broadcaster(conn: HTTPConnection) -> ChangeBroadcaster:
    return conn.app.state.broadcaster
