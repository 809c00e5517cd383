"""Error taxonomy for ingestion, batch imports, and counter maintenance."""

from __future__ import annotations

from enum import Enum


class PhotoAlbumsError(Exception):
    """Base class for recoverable gallery errors."""


class IngestErrorKind(str, Enum):
    WRONG_TYPE = "wrong_type"
    LIMIT_REACHED = "limit_reached"
    MOVE_FAILED = "move_failed"
    DECODE_FAILED = "decode_failed"
    PERSIST_FAILED = "persist_failed"


class BatchErrorKind(str, Enum):
    SOURCE_NOT_FOUND = "source_not_found"
    ARCHIVE_OPEN_FAILED = "archive_open_failed"
    ALBUM_NOT_FOUND = "album_not_found"
    PROGRESS_UNREADABLE = "progress_unreadable"


class CounterErrorKind(str, Enum):
    WRITE_FAILED = "write_failed"


class IngestError(PhotoAlbumsError):
    """A single file could not be turned into an album image.

    Batch imports record these per file and carry on with the next one.
    """

    def __init__(self, kind: IngestErrorKind, message: str, *, file_name: str, album_id: int) -> None:
        super().__init__(message)
        self.kind = kind
        self.file_name = file_name
        self.album_id = album_id

    def as_record(self) -> dict[str, object]:
        return {"kind": self.kind.value, "file_name": self.file_name, "album_id": self.album_id, "message": str(self)}


class BatchError(PhotoAlbumsError):
    """A whole import job cannot start or must be aborted."""

    def __init__(self, kind: BatchErrorKind, message: str, *, source: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.source = source


class CounterError(PhotoAlbumsError):
    """A counter row could not be written; counts are derived data, so this is non-fatal."""

    def __init__(self, kind: CounterErrorKind, message: str, *, subject_type: str, subject_id: int) -> None:
        super().__init__(message)
        self.kind = kind
        self.subject_type = subject_type
        self.subject_id = subject_id


__all__ = [
    "BatchError",
    "BatchErrorKind",
    "CounterError",
    "CounterErrorKind",
    "IngestError",
    "IngestErrorKind",
    "PhotoAlbumsError",
]
