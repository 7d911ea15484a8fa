"""Default on-disk layout for mirrored courses.

::

    <output_dir>/<course-slug>/
        01-<module-slug>/
            01-<lesson-slug>/
                content.md
                video.mp4
                <attachments>
"""

from __future__ import annotations

import contextlib
import re
import unicodedata
from pathlib import Path

import anyio
import httpx
import structlog

from course_mirror.storage.orm import Lesson

logger = structlog.get_logger()

VIDEO_FILENAME = "video.mp4"
MARKDOWN_FILENAME = "content.md"
MAX_SLUG_LENGTH = 100

_NON_SLUG = re.compile(r"[^a-z0-9]+")
_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def slugify(name: str) -> str:
    """Lowercase ASCII slug, at most ``MAX_SLUG_LENGTH`` characters."""
    ascii_name = (
        unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    )
    slug = _NON_SLUG.sub("-", ascii_name.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-") or "untitled"


def folder_name(position: int, name: str) -> str:
    """``folder_name(0, "Introduction")`` -> ``"01-introduction"``."""
    return f"{position + 1:02d}-{slugify(name)}"


def safe_filename(name: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name).strip(" .")
    return cleaned[:200] or "attachment"


class LocalFileLayout:
    """Filesystem collaborator writing under one course directory."""

    def __init__(
        self,
        output_dir: Path,
        course_name: str,
        client: httpx.AsyncClient,
    ) -> None:
        self._root = output_dir / slugify(course_name)
        self._client = client

    def course_dir(self) -> Path:
        return self._root

    def lesson_dir(self, lesson: Lesson) -> Path:
        module = lesson.module
        return (
            self._root
            / folder_name(module.position, module.title)
            / folder_name(lesson.position, lesson.title)
        )

    def video_path(self, lesson: Lesson) -> Path:
        return self.lesson_dir(lesson) / VIDEO_FILENAME

    def markdown_path(self, lesson: Lesson) -> Path:
        return self.lesson_dir(lesson) / MARKDOWN_FILENAME

    def exists(self, path: Path) -> bool:
        return path.is_file() and path.stat().st_size > 0

    async def save_markdown(self, path: Path, text: str) -> None:
        await anyio.Path(path.parent).mkdir(parents=True, exist_ok=True)
        await anyio.Path(path).write_text(text, encoding="utf-8")

    async def download_file(self, url: str, path: Path) -> None:
        """Stream ``url`` to ``path``; existing files are left alone.

        Raises:
            httpx.HTTPError: On transport failure or non-2xx status.
        """
        if self.exists(path):
            return
        await anyio.Path(path.parent).mkdir(parents=True, exist_ok=True)
        tmp = anyio.Path(path.with_name(path.name + ".tmp"))
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                async with await tmp.open("wb") as fh:
                    async for chunk in response.aiter_bytes():
                        await fh.write(chunk)
            await tmp.rename(path)
        finally:
            with contextlib.suppress(OSError):
                await tmp.unlink(missing_ok=True)
        logger.debug("attachment_saved", path=str(path))
