"""
Database abstraction layer supporting SQLite and PostgreSQL.

This module provides a unified interface for database operations that works
with both SQLite (local development, tests) and PostgreSQL (production).

Usage:
    from src.core.database import DatabaseAdapter, create_database

    db = await create_database()

    rows = await db.fetch("SELECT * FROM submissions WHERE status = $1", "pending")
    await db.execute("UPDATE submissions SET priority = $1 WHERE id = $2", 8, submission_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    DatabaseSession,
    affected_rows,
    create_database,
)
from .schema import SCHEMA_STATEMENTS, init_schema

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "DatabaseSession",
    "affected_rows",
    "create_database",
    "SCHEMA_STATEMENTS",
    "init_schema",
]
