"""Domain-specific exceptions and lesson error codes."""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Error codes persisted on failed lessons."""

    SCAN_ERROR = "SCAN_ERROR"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    FETCH_FAILED = "FETCH_FAILED"
    PARSE_ERROR = "PARSE_ERROR"
    SEGMENT_FETCH_FAILED = "SEGMENT_FETCH_FAILED"
    NO_SEGMENTS = "NO_SEGMENTS"
    REMUX_NOT_FOUND = "REMUX_NOT_FOUND"
    REMUX_ERROR = "REMUX_ERROR"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"


class CourseMirrorError(Exception):
    """Base class for all course-mirror errors."""


class SourceSetupError(CourseMirrorError):
    """Authentication or connectivity failure before any phase runs."""


class ScanError(CourseMirrorError):
    """Structure discovery failed; fatal to the whole sync."""

    code = ErrorCode.SCAN_ERROR


class LessonError(CourseMirrorError):
    """Failure local to one lesson, recorded on its row."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class StreamError(LessonError):
    """Raised by the locator resolver when a stream cannot be resolved."""


class DownloadError(LessonError):
    """Raised by the download engine for a failed transfer or remux."""


class RemuxNotFoundError(CourseMirrorError):
    """The external remux tool is not installed on this host."""

    code = ErrorCode.REMUX_NOT_FOUND


class WorkerPoolError(CourseMirrorError):
    """No worker handle could be opened for the pool."""


class DownloadInterrupted(CourseMirrorError):
    """A download stopped for a graceful shutdown; the lesson stays queued."""
