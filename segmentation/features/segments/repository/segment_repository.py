"""
Persistence layer for segments.

The segments row carries both the registry fields (name, definition) and
the materialization columns (materialized_count, last_built_at), so a
delete drops the cached build in the same statement.
"""

from datetime import datetime

from psycopg.types.json import Jsonb

from segmentation.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from segmentation.features.segments.domain import (
    Materialization,
    Segment,
    SegmentDefinition,
    SegmentNotFound,
    StaleBuild,
)
from segmentation.features.segments.pipeline.compiler import parse_definition
from segmentation.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SegmentRepositoryError(DatabaseError):
    """More specific exception for repository failures."""


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SegmentRepository:
    """Raw SQL helpers for the segments table."""

    SELECT_COLUMNS = """
        id, name, definition, materialized_count, last_built_at,
        created_at, updated_at
    """

    @classmethod
    def _row_to_segment(cls, row: dict | None) -> Segment | None:
        if not row:
            return None

        return Segment(
            id=int(row["id"]),
            name=row["name"],
            definition=parse_definition(row.get("definition") or {}),
            materialized_count=row.get("materialized_count"),
            last_built_at=row.get("last_built_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    async def create(cls, name: str, definition: SegmentDefinition) -> Segment:
        query = f"""
            INSERT INTO segments (name, definition)
            VALUES (%s, %s)
            RETURNING {cls.SELECT_COLUMNS}
        """

        row = await fetch_one(query, (name, Jsonb(definition.to_dict())))
        if not row:
            raise SegmentRepositoryError("Failed to create segment", operation="create")

        segment = cls._row_to_segment(row)
        logger.info("Segment created", segment_id=segment.id, name=name)
        return segment

    @classmethod
    async def get(cls, segment_id: int) -> Segment:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM segments WHERE id = %s"
        segment = cls._row_to_segment(await fetch_one(query, (segment_id,)))
        if segment is None:
            raise SegmentNotFound(segment_id)
        return segment

    @classmethod
    async def update(
        cls,
        segment_id: int,
        *,
        name: str | None = None,
        definition: SegmentDefinition | None = None,
    ) -> Segment:
        """
        Replace name and/or definition in one statement.

        Materialization columns are left alone: a new definition does not
        invalidate the last build.
        """
        query = f"""
            UPDATE segments
            SET name = COALESCE(%s, name),
                definition = COALESCE(%s, definition),
                updated_at = NOW()
            WHERE id = %s
            RETURNING {cls.SELECT_COLUMNS}
        """

        payload = Jsonb(definition.to_dict()) if definition is not None else None
        segment = cls._row_to_segment(await fetch_one(query, (name, payload, segment_id)))
        if segment is None:
            raise SegmentNotFound(segment_id)

        logger.info(
            "Segment updated",
            segment_id=segment_id,
            renamed=name is not None,
            definition_replaced=definition is not None,
        )
        return segment

    @classmethod
    async def update_definition(cls, segment_id: int, definition: SegmentDefinition) -> Segment:
        return await cls.update(segment_id, definition=definition)

    @classmethod
    async def rename(cls, segment_id: int, name: str) -> Segment:
        return await cls.update(segment_id, name=name)

    @classmethod
    async def delete(cls, segment_id: int) -> None:
        deleted = await execute_query("DELETE FROM segments WHERE id = %s", (segment_id,))
        if not deleted:
            raise SegmentNotFound(segment_id)
        logger.info("Segment deleted", segment_id=segment_id)

    @classmethod
    async def list_segments(
        cls, page: int = 1, per_page: int = 25, search: str | None = None
    ) -> tuple[list[Segment], int]:
        """Page through segments ordered by id, optionally filtered by name."""
        where = ""
        params: tuple = ()
        if search:
            where = "WHERE name ILIKE %s"
            params = (f"%{_escape_like(search)}%",)

        total = await fetch_val(f"SELECT COUNT(*) FROM segments {where}", params)

        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM segments
            {where}
            ORDER BY id ASC
            LIMIT %s OFFSET %s
        """
        rows = await fetch_all(query, params + (per_page, (page - 1) * per_page))
        return [cls._row_to_segment(row) for row in rows], int(total or 0)

    @classmethod
    async def list_stale(cls, older_than: datetime, limit: int) -> list[Segment]:
        """Segments never built, or last built before `older_than`, oldest first."""
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM segments
            WHERE last_built_at IS NULL OR last_built_at < %s
            ORDER BY last_built_at ASC NULLS FIRST, id ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (older_than, limit))
        return [cls._row_to_segment(row) for row in rows]

    @classmethod
    async def read_materialization(cls, segment_id: int) -> Materialization | None:
        row = await fetch_one(
            "SELECT materialized_count, last_built_at FROM segments WHERE id = %s",
            (segment_id,),
        )
        if row is None:
            raise SegmentNotFound(segment_id)
        if row["last_built_at"] is None:
            return None
        return Materialization(
            segment_id=segment_id,
            match_count=int(row["materialized_count"]),
            built_at=row["last_built_at"],
        )

    @classmethod
    async def write_materialization(
        cls, segment_id: int, match_count: int, built_at: datetime
    ) -> Materialization:
        """
        Store a build result unless a newer one is already there.

        The built_at comparison happens inside the UPDATE, so two writers
        racing on the same row cannot both win.
        """
        query = """
            UPDATE segments
            SET materialized_count = %s,
                last_built_at = %s
            WHERE id = %s
              AND (last_built_at IS NULL OR last_built_at < %s)
            RETURNING id
        """

        written = await fetch_one(query, (match_count, built_at, segment_id, built_at))
        if written is None:
            exists = await fetch_val("SELECT 1 FROM segments WHERE id = %s", (segment_id,))
            if not exists:
                raise SegmentNotFound(segment_id)
            logger.warning(
                "Rejected stale materialization",
                segment_id=segment_id,
                built_at=built_at.isoformat(),
            )
            raise StaleBuild(segment_id)

        logger.info(
            "Segment materialization stored",
            segment_id=segment_id,
            match_count=match_count,
            built_at=built_at.isoformat(),
        )
        return Materialization(segment_id=segment_id, match_count=match_count, built_at=built_at)
