"""
Segment API routes.

Thin HTTP layer over SegmentService: parse the request, call one service
operation, convert domain errors into HTTP errors. Saving a definition
never builds; clients call /build explicitly afterwards.
"""

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status

from segmentation.auth.verify import auth_dependency
from segmentation.db.helpers import DatabaseError
from segmentation.features.segments.api.schemas import (
    BuildPerformedResponse,
    BuildRequest,
    BuildResponse,
    ContactSummaryResponse,
    PageMeta,
    SegmentContactsResponse,
    SegmentCreateRequest,
    SegmentListResponse,
    SegmentPreviewResponse,
    SegmentResponse,
    SegmentUpdateRequest,
)
from segmentation.features.segments.domain import (
    BuildInProgress,
    DefinitionValidationError,
    EvaluationTimeout,
    SegmentError,
    SegmentNotFound,
    SourceUnavailable,
    StaleBuild,
)
from segmentation.features.segments.services import (
    UNCHANGED,
    SegmentService,
    get_segment_service,
)
from segmentation.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/segments", tags=["segments"])

MAX_PER_PAGE = 200

_STATUS_BY_ERROR: dict[type[SegmentError], int] = {
    SegmentNotFound: status.HTTP_404_NOT_FOUND,
    BuildInProgress: status.HTTP_409_CONFLICT,
    StaleBuild: status.HTTP_409_CONFLICT,
    SourceUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    EvaluationTimeout: status.HTTP_504_GATEWAY_TIMEOUT,
}


def _http_error(error: Exception, user_id: str | None, segment_id: int | None = None) -> HTTPException:
    """Map a service failure onto an HTTP error. Never turns a failure into an empty result."""
    if isinstance(error, DefinitionValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"field": error.field, "message": error.message},
        )

    if isinstance(error, DatabaseError):
        logger.error(
            "Segment storage unavailable",
            user_id=user_id,
            segment_id=segment_id,
            operation=error.operation,
            error=str(error),
        )
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Segment storage unavailable"
        )

    code = _STATUS_BY_ERROR.get(type(error), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if code >= 500:
        logger.error(
            "Segment operation failed",
            user_id=user_id,
            segment_id=segment_id,
            error=str(error),
            error_type=type(error).__name__,
        )
    return HTTPException(status_code=code, detail=str(error))


@router.post("", response_model=SegmentResponse, status_code=status.HTTP_201_CREATED)
async def create_segment(
    payload: SegmentCreateRequest,
    claims: dict = Depends(auth_dependency),
    service: SegmentService = Depends(get_segment_service),
):
    """Create a named segment. Does not build."""
    user_id = claims.get("sub")
    try:
        segment = await service.create_segment(payload.name, payload.definition)
    except (SegmentError, DatabaseError) as e:
        raise _http_error(e, user_id) from e

    logger.info("Segment created via API", user_id=user_id, segment_id=segment.id)
    return SegmentResponse.from_segment(segment)


@router.get("", response_model=SegmentListResponse)
async def list_segments(
    page: int = Query(default=1, ge=1, description="Page number (1-based)"),
    per_page: int = Query(default=25, ge=1, le=MAX_PER_PAGE, alias="perPage"),
    search: str | None = Query(default=None, description="Case-insensitive name filter"),
    claims: dict = Depends(auth_dependency),
    service: SegmentService = Depends(get_segment_service),
):
    """List segments, paged, optionally filtered by name."""
    try:
        segments, total = await service.list_segments(page, per_page, search)
    except (SegmentError, DatabaseError) as e:
        raise _http_error(e, claims.get("sub")) from e

    return SegmentListResponse(
        meta=PageMeta.build(page, per_page, total),
        items=[SegmentResponse.from_segment(segment) for segment in segments],
    )


@router.get("/{segment_id}", response_model=SegmentResponse)
async def get_segment(
    segment_id: int,
    claims: dict = Depends(auth_dependency),
    service: SegmentService = Depends(get_segment_service),
):
    try:
        segment = await service.get_segment(segment_id)
    except (SegmentError, DatabaseError) as e:
        raise _http_error(e, claims.get("sub"), segment_id) from e
    return SegmentResponse.from_segment(segment)


@router.patch("/{segment_id}", response_model=SegmentResponse)
async def update_segment(
    segment_id: int,
    payload: SegmentUpdateRequest,
    claims: dict = Depends(auth_dependency),
    service: SegmentService = Depends(get_segment_service),
):
    """Rename and/or replace the definition. Cached counts are kept."""
    provided = payload.model_fields_set
    try:
        segment = await service.update_segment(
            segment_id,
            name=payload.name if "name" in provided else UNCHANGED,
            raw_definition=payload.definition if "definition" in provided else UNCHANGED,
        )
    except (SegmentError, DatabaseError) as e:
        raise _http_error(e, claims.get("sub"), segment_id) from e
    return SegmentResponse.from_segment(segment)


@router.delete("/{segment_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def delete_segment(
    segment_id: int,
    claims: dict = Depends(auth_dependency),
    service: SegmentService = Depends(get_segment_service),
):
    """Delete a segment and its stored build result."""
    user_id = claims.get("sub")
    try:
        await service.delete_segment(segment_id)
    except (SegmentError, DatabaseError) as e:
        raise _http_error(e, user_id, segment_id) from e

    logger.info("Segment deleted via API", user_id=user_id, segment_id=segment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{segment_id}/build", response_model=BuildResponse)
async def build_segment(
    segment_id: int,
    payload: BuildRequest | None = Body(default=None),
    claims: dict = Depends(auth_dependency),
    service: SegmentService = Depends(get_segment_service),
):
    """
    Evaluate a segment.

    dryRun=true previews without storing anything. dryRun=false takes the
    segment's build lease, evaluates, and stores the count; a concurrent
    build for the same segment gets 409.
    """
    user_id = claims.get("sub")
    dry_run = payload.dry_run if payload else False

    try:
        if dry_run:
            segment, result = await service.dry_run(segment_id)
            performed = None
        else:
            segment, result, outcome = await service.build(segment_id)
            performed = BuildPerformedResponse.from_outcome(outcome)
    except (SegmentError, DatabaseError) as e:
        raise _http_error(e, user_id, segment_id) from e

    return BuildResponse(
        segment=SegmentResponse.from_segment(segment),
        matches=result.match_count,
        sample=[ContactSummaryResponse.from_summary(summary) for summary in result.sample],
        dry_run=dry_run,
        warnings=result.warnings,
        performed=performed,
    )


@router.get("/{segment_id}/preview", response_model=SegmentPreviewResponse)
async def preview_segment(
    segment_id: int,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=25, ge=1, le=MAX_PER_PAGE, alias="perPage"),
    claims: dict = Depends(auth_dependency),
    service: SegmentService = Depends(get_segment_service),
):
    """Read-only page of matching contacts. Does not touch the stored count."""
    try:
        items, total = await service.preview(segment_id, page, per_page)
    except (SegmentError, DatabaseError) as e:
        raise _http_error(e, claims.get("sub"), segment_id) from e

    return SegmentPreviewResponse(
        meta=PageMeta.build(page, per_page, total),
        items=[ContactSummaryResponse.from_summary(item) for item in items],
    )


@router.get("/{segment_id}/contacts", response_model=SegmentContactsResponse)
async def resolve_segment_contacts(
    segment_id: int,
    claims: dict = Depends(auth_dependency),
    service: SegmentService = Depends(get_segment_service),
):
    """Every matching contact id, evaluated now. Used for send-time targeting."""
    try:
        ids = await service.resolve_contact_ids(segment_id)
    except (SegmentError, DatabaseError) as e:
        raise _http_error(e, claims.get("sub"), segment_id) from e

    return SegmentContactsResponse(ids=list(ids), total=len(ids))
