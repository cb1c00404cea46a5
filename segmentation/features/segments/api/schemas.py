"""
Segment API request/response models.
Used by the router for input parsing and output formatting.
"""

import math
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from segmentation.features.segments.domain import BuildOutcome, ContactSummary, Segment


class SegmentCreateRequest(BaseModel):
    """Request for creating a segment."""

    name: str = Field(..., description="Segment name")
    definition: dict[str, Any] | None = Field(
        default=None, description="Filter clauses; omitted clauses add no constraint"
    )


class SegmentUpdateRequest(BaseModel):
    """Partial update. Omitted fields are left untouched; a definition fully replaces."""

    name: str | None = Field(None, description="New segment name")
    definition: dict[str, Any] | None = Field(None, description="Replacement definition")


class BuildRequest(BaseModel):
    """Request for evaluating a segment."""

    model_config = ConfigDict(populate_by_name=True)

    dry_run: bool = Field(default=False, alias="dryRun", description="Preview without storing")


class SegmentResponse(BaseModel):
    """Response model for a segment."""

    id: int = Field(..., description="Segment ID")
    name: str = Field(..., description="Segment name")
    definition: dict[str, Any] = Field(..., description="Stored definition (present clauses only)")
    materialized_count: int | None = Field(None, description="Match count from the last build")
    last_built_at: datetime | None = Field(None, description="When the last build started")
    created_at: datetime = Field(..., description="When the segment was created")
    updated_at: datetime = Field(..., description="When name or definition last changed")

    @classmethod
    def from_segment(cls, segment: Segment) -> "SegmentResponse":
        return cls(
            id=segment.id,
            name=segment.name,
            definition=segment.definition.to_dict(),
            materialized_count=segment.materialized_count,
            last_built_at=segment.last_built_at,
            created_at=segment.created_at,
            updated_at=segment.updated_at,
        )


class ContactSummaryResponse(BaseModel):
    id: int
    email: str | None = None
    name: str | None = None
    status: str | None = None

    @classmethod
    def from_summary(cls, summary: ContactSummary) -> "ContactSummaryResponse":
        return cls(id=summary.id, email=summary.email, name=summary.name, status=summary.status)


class BuildPerformedResponse(BaseModel):
    """Count movement from a committed build."""

    previous_count: int | None = Field(None, description="Stored count before this build")
    new_count: int = Field(..., description="Stored count after this build")
    delta: int | None = Field(None, description="new_count - previous_count; null on first build")

    @classmethod
    def from_outcome(cls, outcome: BuildOutcome) -> "BuildPerformedResponse":
        return cls(
            previous_count=outcome.previous_count,
            new_count=outcome.new_count,
            delta=outcome.delta,
        )


class BuildResponse(BaseModel):
    """Response for dry runs and builds."""

    model_config = ConfigDict(populate_by_name=True)

    segment: SegmentResponse
    matches: int = Field(..., description="Number of matching contacts")
    sample: list[ContactSummaryResponse] = Field(..., description="Lowest-id matches, ascending")
    dry_run: bool = Field(..., alias="dryRun")
    warnings: list[str] = Field(default_factory=list, description="Likely configuration mistakes")
    performed: BuildPerformedResponse | None = Field(None, description="Set for committed builds")


class PageMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page: int
    per_page: int = Field(..., alias="perPage")
    total: int
    total_pages: int = Field(..., alias="totalPages")

    @classmethod
    def build(cls, page: int, per_page: int, total: int) -> "PageMeta":
        return cls(
            page=page,
            per_page=per_page,
            total=total,
            total_pages=math.ceil(total / per_page) if total else 0,
        )


class SegmentListResponse(BaseModel):
    meta: PageMeta
    items: list[SegmentResponse]


class SegmentPreviewResponse(BaseModel):
    meta: PageMeta
    items: list[ContactSummaryResponse]


class SegmentContactsResponse(BaseModel):
    """All matching contact ids, for campaign targeting."""

    ids: list[int]
    total: int
