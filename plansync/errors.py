"""
Error types raised by the project store and schema manager.
"""

from __future__ import annotations


class ProjectStoreError(Exception):
    """A store operation failed; the message carries the underlying detail."""


class InvalidFeatureError(ProjectStoreError):
    """A feature is missing its id or geometry."""


class SchemaMigrationError(ProjectStoreError):
    """The database schema could not be brought up to date."""
