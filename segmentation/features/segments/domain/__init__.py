"""
Domain subpackage for the segments feature.
"""

from .errors import (
    BuildInProgress,
    DefinitionValidationError,
    EvaluationTimeout,
    SegmentError,
    SegmentNotFound,
    SourceUnavailable,
    StaleBuild,
)
from .models import (
    BuildOutcome,
    Contact,
    ContactStatus,
    ContactSummary,
    EvaluationMode,
    EvaluationResult,
    Materialization,
    Segment,
    SegmentDefinition,
)

__all__ = [
    "BuildInProgress",
    "BuildOutcome",
    "Contact",
    "ContactStatus",
    "ContactSummary",
    "DefinitionValidationError",
    "EvaluationMode",
    "EvaluationResult",
    "EvaluationTimeout",
    "Materialization",
    "Segment",
    "SegmentDefinition",
    "SegmentError",
    "SegmentNotFound",
    "SourceUnavailable",
    "StaleBuild",
]
