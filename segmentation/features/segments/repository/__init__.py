from .contact_directory import ContactDirectoryRepository, contact_directory
from .segment_repository import SegmentRepository, SegmentRepositoryError

__all__ = [
    "ContactDirectoryRepository",
    "SegmentRepository",
    "SegmentRepositoryError",
    "contact_directory",
]
