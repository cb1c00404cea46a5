"""
Segment service.

Single entry point used by the HTTP router and the refresh job. Every
operation is an explicit sequence (load -> validate -> compile ->
evaluate -> persist) and each step's failure is raised to the caller
as-is; nothing is retried here.
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from segmentation.config import settings
from segmentation.db.helpers import DatabaseError
from segmentation.features.segments.cache import MaterializationCache
from segmentation.features.segments.domain import (
    BuildOutcome,
    ContactSummary,
    DefinitionValidationError,
    EvaluationMode,
    EvaluationResult,
    EvaluationTimeout,
    Segment,
    SourceUnavailable,
)
from segmentation.features.segments.pipeline import (
    ContactSource,
    MembershipEvaluator,
    Predicate,
    compile_definition,
    parse_definition,
)
from segmentation.features.segments.repository import SegmentRepository, contact_directory
from segmentation.infrastructure.observability.logging import get_logger, log_evaluation

logger = get_logger(__name__)

MAX_NAME_LENGTH = 255

# Marks "field not supplied" in partial updates, distinct from an explicit null
UNCHANGED: Any = object()


def _validate_name(name: Any) -> str:
    if not isinstance(name, str):
        raise DefinitionValidationError("name", "must be a string")
    name = name.strip()
    if not name:
        raise DefinitionValidationError("name", "must not be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise DefinitionValidationError("name", f"must be at most {MAX_NAME_LENGTH} characters")
    return name


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SegmentService:
    """Registry, evaluation and materialization operations for segments."""

    def __init__(
        self,
        repository=None,
        contact_source: ContactSource | None = None,
        cache: MaterializationCache | None = None,
        evaluator: MembershipEvaluator | None = None,
        clock: Callable[[], datetime] | None = None,
        timeout_s: float | None = None,
        preview_max_depth: int | None = None,
    ):
        self._repository = repository or SegmentRepository
        self._source = contact_source or contact_directory
        self._cache = cache or MaterializationCache(repository=self._repository)
        self._evaluator = evaluator or MembershipEvaluator(
            self._source, **settings.get_evaluation_config()
        )
        self._clock = clock or _utcnow
        self._timeout_s = timeout_s or settings.SEGMENT_EVALUATION_TIMEOUT_S
        self._preview_max_depth = preview_max_depth or settings.SEGMENT_PREVIEW_MAX_DEPTH

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def create_segment(self, name: Any, raw_definition: Mapping | None = None) -> Segment:
        name = _validate_name(name)
        definition = parse_definition(raw_definition)
        return await self._repository.create(name, definition)

    async def get_segment(self, segment_id: int) -> Segment:
        return await self._repository.get(segment_id)

    async def list_segments(
        self, page: int = 1, per_page: int = 25, search: str | None = None
    ) -> tuple[list[Segment], int]:
        search = search.strip() if search else None
        return await self._repository.list_segments(page, per_page, search or None)

    async def update_segment(
        self, segment_id: int, *, name: Any = UNCHANGED, raw_definition: Any = UNCHANGED
    ) -> Segment:
        """
        Rename and/or replace the definition. Never triggers a build.

        A supplied definition fully replaces the stored one; an explicit
        None clears every clause.
        """
        new_name = None if name is UNCHANGED else _validate_name(name)
        new_definition = None if raw_definition is UNCHANGED else parse_definition(raw_definition)

        if new_name is None and new_definition is None:
            return await self._repository.get(segment_id)
        if new_definition is None:
            return await self._repository.rename(segment_id, new_name)
        if new_name is None:
            return await self._repository.update_definition(segment_id, new_definition)
        return await self._repository.update(segment_id, name=new_name, definition=new_definition)

    async def rename_segment(self, segment_id: int, name: Any) -> Segment:
        return await self.update_segment(segment_id, name=name)

    async def update_definition(self, segment_id: int, raw_definition: Mapping | None) -> Segment:
        """Replace the definition. The stored count stays until the next build."""
        return await self.update_segment(segment_id, raw_definition=raw_definition)

    async def delete_segment(self, segment_id: int) -> None:
        await self._repository.delete(segment_id)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def dry_run(self, segment_id: int) -> tuple[Segment, EvaluationResult]:
        """Evaluate without touching the materialization. Takes no lease."""
        segment = await self._repository.get(segment_id)
        result = await self._evaluate(segment, EvaluationMode.DRY_RUN)
        return segment, result

    async def build(self, segment_id: int) -> tuple[Segment, EvaluationResult, BuildOutcome]:
        """
        Evaluate under the segment's exclusive lease and store the count.

        built_at is taken when the scan starts. If the clock has not moved
        past the stored value it is bumped by one microsecond, so repeated
        builds always advance last_built_at.
        """
        segment = await self._repository.get(segment_id)

        async with self._cache.lease(segment_id):
            previous = await self._cache.read(segment_id)
            built_at = self._clock()
            if previous is not None and built_at <= previous.built_at:
                built_at = previous.built_at + timedelta(microseconds=1)

            result = await self._evaluate(segment, EvaluationMode.BUILD)
            await self._cache.persist(segment_id, result.match_count, built_at)

        outcome = BuildOutcome(
            previous_count=previous.match_count if previous else None,
            new_count=result.match_count,
        )
        logger.info(
            "Segment built",
            segment_id=segment_id,
            match_count=result.match_count,
            delta=outcome.delta,
            built_at=built_at.isoformat(),
        )
        return await self._repository.get(segment_id), result, outcome

    async def preview(
        self, segment_id: int, page: int = 1, per_page: int = 25
    ) -> tuple[list[ContactSummary], int]:
        """
        One page of matching contacts in ascending id order, plus the total.

        The scan keeps every match up to the requested page, so pages deeper
        than SEGMENT_PREVIEW_MAX_DEPTH rows are rejected up front.
        """
        depth = page * per_page
        if depth > self._preview_max_depth:
            raise DefinitionValidationError(
                "page", f"page * perPage must be at most {self._preview_max_depth}"
            )

        segment = await self._repository.get(segment_id)
        result = await self._evaluate(segment, EvaluationMode.DRY_RUN, sample_size=depth)
        start = (page - 1) * per_page
        return list(result.sample[start : start + per_page]), result.match_count

    async def resolve_contact_ids(self, segment_id: int) -> tuple[int, ...]:
        """Every matching contact id, for send-time campaign targeting."""
        segment = await self._repository.get(segment_id)
        result = await self._evaluate(
            segment, EvaluationMode.DRY_RUN, sample_size=0, collect_ids=True
        )
        return result.matched_ids or ()

    async def _compile(self, segment: Segment) -> Predicate:
        referenced = segment.definition.referenced_list_ids
        known = None
        if referenced:
            try:
                known = await self._source.existing_list_ids(referenced)
            except (DatabaseError, OSError) as e:
                raise SourceUnavailable(f"List lookup failed: {e}") from e
        return compile_definition(segment.definition, known_list_ids=known)

    async def _evaluate(
        self, segment: Segment, mode: EvaluationMode, **options: Any
    ) -> EvaluationResult:
        started = time.perf_counter()
        try:
            async with asyncio.timeout(self._timeout_s):
                predicate = await self._compile(segment)
                result = await self._evaluator.evaluate(predicate, mode, **options)
        except TimeoutError as e:
            logger.warning(
                "Segment evaluation timed out, discarding partial state",
                segment_id=segment.id,
                mode=mode.value,
                timeout_s=self._timeout_s,
            )
            raise EvaluationTimeout(self._timeout_s) from e

        log_evaluation(
            segment_id=segment.id,
            mode=mode.value,
            match_count=result.match_count,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            warnings=result.warnings,
        )
        return result


segment_service = SegmentService()


def get_segment_service() -> SegmentService:
    """FastAPI dependency returning the shared service."""
    return segment_service
