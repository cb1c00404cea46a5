"""
Background jobs for the segments feature.
"""

from .refresh_job import RefreshStats, refresh_stale_segments, run_segment_refresh

__all__ = ["RefreshStats", "refresh_stale_segments", "run_segment_refresh"]
