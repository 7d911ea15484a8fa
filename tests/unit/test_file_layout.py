"""Tests for the local file layout."""

from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from course_mirror.storage.file_layout import (
    LocalFileLayout,
    folder_name,
    safe_filename,
    slugify,
)


def _make_lesson(
    title: str = "Welcome!", position: int = 0, module_title: str = "Getting Started"
) -> MagicMock:
    lesson = MagicMock()
    lesson.title = title
    lesson.position = position
    lesson.module.title = module_title
    lesson.module.position = 1
    return lesson


def _make_layout(tmp_path: Path, handler=None) -> LocalFileLayout:  # type: ignore[no-untyped-def]
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(404)))
    return LocalFileLayout(tmp_path, "My Course: Part 1", httpx.AsyncClient(transport=transport))


class TestNames:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Hello World", "hello-world"),
            ("Café crème", "cafe-creme"),
            ("  --Intro--  ", "intro"),
            ("???", "untitled"),
        ],
    )
    def test_slugify(self, name: str, expected: str) -> None:
        assert slugify(name) == expected

    def test_slug_length_capped(self) -> None:
        assert len(slugify("a" * 300)) == 100

    def test_folder_name_one_based(self) -> None:
        assert folder_name(0, "Introduction") == "01-introduction"
        assert folder_name(11, "Wrap up") == "12-wrap-up"

    def test_safe_filename(self) -> None:
        assert safe_filename('slides: "v2"/final?.pdf') == "slides_ _v2__final_.pdf"
        assert safe_filename("...") == "attachment"


class TestLocalFileLayout:
    def test_paths(self, tmp_path: Path) -> None:
        layout = _make_layout(tmp_path)
        lesson = _make_lesson()

        assert layout.course_dir() == tmp_path / "my-course-part-1"
        expected_dir = tmp_path / "my-course-part-1" / "02-getting-started" / "01-welcome"
        assert layout.video_path(lesson) == expected_dir / "video.mp4"
        assert layout.markdown_path(lesson) == expected_dir / "content.md"

    def test_exists_requires_content(self, tmp_path: Path) -> None:
        layout = _make_layout(tmp_path)
        empty = tmp_path / "empty.mp4"
        empty.touch()
        full = tmp_path / "full.mp4"
        full.write_bytes(b"x")

        assert layout.exists(empty) is False
        assert layout.exists(full) is True
        assert layout.exists(tmp_path / "missing.mp4") is False

    async def test_save_markdown_creates_dirs(self, tmp_path: Path) -> None:
        path = tmp_path / "a" / "b" / "content.md"
        await _make_layout(tmp_path).save_markdown(path, "# Lesson\n")
        assert path.read_text(encoding="utf-8") == "# Lesson\n"

    async def test_download_file(self, tmp_path: Path) -> None:
        layout = _make_layout(
            tmp_path, lambda request: httpx.Response(200, content=b"%PDF")
        )
        path = tmp_path / "lesson" / "slides.pdf"

        await layout.download_file("https://files.example.com/slides.pdf", path)

        assert path.read_bytes() == b"%PDF"
        assert not path.with_name("slides.pdf.tmp").exists()

    async def test_download_existing_skipped(self, tmp_path: Path) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=b"new")

        path = tmp_path / "slides.pdf"
        path.write_bytes(b"old")
        await _make_layout(tmp_path, handler).download_file("https://f.example.com/s.pdf", path)

        assert path.read_bytes() == b"old"
        assert requests == []

    async def test_download_error_leaves_nothing(self, tmp_path: Path) -> None:
        path = tmp_path / "slides.pdf"
        with pytest.raises(httpx.HTTPStatusError):
            await _make_layout(tmp_path).download_file("https://f.example.com/s.pdf", path)
        assert not path.exists()
        assert not path.with_name("slides.pdf.tmp").exists()
