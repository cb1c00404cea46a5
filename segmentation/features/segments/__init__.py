"""
Audience segments feature package.

Every layer of the segment flow lives here (domain values, predicate
compiler and evaluator, repositories, the materialization cache, the
service facade, the HTTP router and the refresh job), so the whole
definition -> predicate -> membership path can be read in one place.
"""

from .api.router import router as segments_router  # noqa: F401
from .services.segment_service import SegmentService, segment_service  # noqa: F401
from .domain.models import Segment, SegmentDefinition  # noqa: F401
