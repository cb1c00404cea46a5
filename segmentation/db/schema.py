"""
DDL for the tables this service owns.

Only `segments` belongs to us. `contacts`, `lists` and `list_memberships`
are owned by the contact/list services and are read-only here; their
expected columns are documented in the contact source repository.
"""

from segmentation.db.helpers import execute_transaction
from segmentation.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SEGMENTS_DDL = [
    """
    CREATE TABLE IF NOT EXISTS segments (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        definition JSONB NOT NULL DEFAULT '{}'::jsonb,
        materialized_count BIGINT,
        last_built_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_segments_name ON segments (lower(name))",
    "CREATE INDEX IF NOT EXISTS idx_segments_last_built_at ON segments (last_built_at)",
]


async def ensure_schema() -> None:
    """Create owned tables if they are missing."""
    await execute_transaction([(statement, ()) for statement in SEGMENTS_DDL])
    logger.info("Segment schema ensured", statements=len(SEGMENTS_DDL))
