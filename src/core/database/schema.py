"""
Submission pipeline schema.

Portable DDL accepted by both SQLite and PostgreSQL. Timestamps are
TIMESTAMPTZ on PostgreSQL; on SQLite they are stored as UTC ISO-8601 strings
which sort and compare chronologically.
"""

import logging
from typing import List

from .adapter import DatabaseAdapter

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS submissions (
        id TEXT PRIMARY KEY,
        recommendation_id TEXT NOT NULL,
        university_id TEXT NOT NULL,
        owner_id TEXT,
        delivery_method TEXT NOT NULL CHECK (delivery_method IN ('api', 'email', 'manual')),
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'submitted', 'confirmed', 'failed')),
        external_reference TEXT,
        error_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
        max_retries INTEGER NOT NULL DEFAULT 5 CHECK (max_retries >= 0),
        priority INTEGER NOT NULL DEFAULT 5 CHECK (priority >= 1 AND priority <= 10),
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        submitted_at TIMESTAMPTZ,
        confirmed_at TIMESTAMPTZ,
        CHECK (retry_count <= max_retries),
        UNIQUE (recommendation_id, university_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_submissions_status ON submissions(status)",
    "CREATE INDEX IF NOT EXISTS idx_submissions_recommendation ON submissions(recommendation_id)",
    "CREATE INDEX IF NOT EXISTS idx_submissions_external_reference ON submissions(external_reference)",
    """
    CREATE TABLE IF NOT EXISTS submission_queue (
        submission_id TEXT PRIMARY KEY REFERENCES submissions(id) ON DELETE CASCADE,
        priority INTEGER NOT NULL DEFAULT 5 CHECK (priority >= 1 AND priority <= 10),
        scheduled_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
        max_attempts INTEGER NOT NULL DEFAULT 5,
        backoff_multiplier DOUBLE PRECISION NOT NULL DEFAULT 2.0,
        claimed BOOLEAN NOT NULL DEFAULT FALSE,
        claimed_at TIMESTAMPTZ,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_submission_queue_ready
    ON submission_queue(claimed, priority DESC, scheduled_at ASC)
    """,
    """
    CREATE TABLE IF NOT EXISTS submission_confirmations (
        submission_id TEXT PRIMARY KEY REFERENCES submissions(id) ON DELETE CASCADE,
        confirmation_method TEXT NOT NULL
            CHECK (confirmation_method IN ('email', 'api', 'webhook', 'manual')),
        confirmation_code TEXT,
        receipt_url TEXT,
        payload TEXT,
        confirmed_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS submission_audit (
        id TEXT PRIMARY KEY,
        submission_id TEXT NOT NULL REFERENCES submissions(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        actor TEXT,
        from_status TEXT,
        to_status TEXT,
        details TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_submission_audit_submission ON submission_audit(submission_id)",
]


async def init_schema(db: DatabaseAdapter) -> None:
    """Create pipeline tables and indexes if they do not exist."""
    for statement in SCHEMA_STATEMENTS:
        await db.execute(statement)
    logger.info(f"Submission schema ready ({len(SCHEMA_STATEMENTS)} statements)")
