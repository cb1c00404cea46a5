"""
Service layer for the segments feature.
"""

from .segment_service import UNCHANGED, SegmentService, get_segment_service, segment_service

__all__ = ["UNCHANGED", "SegmentService", "get_segment_service", "segment_service"]
