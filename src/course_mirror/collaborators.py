"""Contracts for the site-specific and filesystem collaborators.

The sync pipeline never talks to a course platform directly. A
``CourseSource`` implementation (usually browser-driven) discovers the
course tree and renders lesson pages; a ``FileLayout`` decides where
artifacts live on disk. Both are passed into the orchestrator.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

from course_mirror.models.locator import AuthContext
from course_mirror.models.structure import (
    DiscoveredCourse,
    LessonContent,
    VideoReference,
)
from course_mirror.storage.orm import Lesson


class CourseSource(Protocol):
    """Site-specific access to one course platform.

    Handles are opaque per-worker resources (e.g. a browser page) opened
    by ``open_handle`` and released by ``close_handle``.
    """

    async def start(self) -> None:
        """Log in / connect before any phase runs.

        Raises:
            SourceSetupError: On authentication or connectivity failure.
        """
        ...

    async def stop(self) -> None: ...

    async def discover_structure(self, root_url: str) -> DiscoveredCourse: ...

    async def open_handle(self) -> Any: ...

    async def close_handle(self, handle: Any) -> None: ...

    async def resolve_video_reference(
        self, handle: Any, lesson_url: str
    ) -> VideoReference | None:
        """Video found on the lesson page, or ``None`` when there is none."""
        ...

    async def extract_content(self, handle: Any, lesson_url: str) -> LessonContent: ...

    async def auth_context(self) -> AuthContext | None:
        """Cookies/referer/token forwarded with media requests."""
        ...


class FileLayout(Protocol):
    """Where lesson artifacts are written."""

    def course_dir(self) -> Path: ...

    def video_path(self, lesson: Lesson) -> Path: ...

    def markdown_path(self, lesson: Lesson) -> Path: ...

    def exists(self, path: Path) -> bool: ...

    async def save_markdown(self, path: Path, text: str) -> None: ...

    async def download_file(self, url: str, path: Path) -> None: ...
