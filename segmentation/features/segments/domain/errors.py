"""Error taxonomy for segment evaluation and storage."""


class SegmentError(Exception):
    """Base class for every segment failure surfaced to callers."""


class DefinitionValidationError(SegmentError):
    """A segment definition (or name) is malformed. Raised before any scan."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class SegmentNotFound(SegmentError):
    def __init__(self, segment_id: int):
        super().__init__(f"Segment {segment_id} not found")
        self.segment_id = segment_id


class BuildInProgress(SegmentError):
    """Another build holds the exclusive lease for this segment."""

    def __init__(self, segment_id: int):
        super().__init__(f"A build is already running for segment {segment_id}")
        self.segment_id = segment_id


class StaleBuild(SegmentError):
    """A build finished with a built_at not newer than the stored one."""

    def __init__(self, segment_id: int):
        super().__init__(f"A newer build result is already stored for segment {segment_id}")
        self.segment_id = segment_id


class SourceUnavailable(SegmentError):
    """A collaborator read failed mid-scan; partial results were discarded."""


class EvaluationTimeout(SegmentError):
    """Evaluation exceeded the caller's deadline; partial results were discarded."""

    def __init__(self, timeout_s: float):
        super().__init__(f"Segment evaluation exceeded {timeout_s:g}s")
        self.timeout_s = timeout_s
