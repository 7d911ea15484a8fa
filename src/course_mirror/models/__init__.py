"""Pydantic schemas for course-mirror domain models."""

from course_mirror.models.locator import (
    AuthContext,
    DirectLocator,
    DownloadResult,
    DownloadTask,
    PlaylistLocator,
    SegmentListLocator,
    StreamLocator,
    Variant,
)
from course_mirror.models.structure import (
    Attachment,
    DiscoveredCourse,
    LessonContent,
    LessonRef,
    ModuleRef,
    VideoReference,
    VideoType,
)

__all__ = [
    "Attachment",
    "AuthContext",
    "DirectLocator",
    "DiscoveredCourse",
    "DownloadResult",
    "DownloadTask",
    "LessonContent",
    "LessonRef",
    "ModuleRef",
    "PlaylistLocator",
    "SegmentListLocator",
    "StreamLocator",
    "Variant",
    "VideoReference",
    "VideoType",
]
