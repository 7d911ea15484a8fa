"""Tests for the course-mirror command line."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from course_mirror.cli import (
    EXIT_FAILED,
    EXIT_OK,
    EXIT_SETUP_FAILED,
    build_parser,
    format_report,
    load_source_factory,
    main,
    reset_errors,
    run_sync,
    show_status,
)
from course_mirror.config import Settings, VideoQuality
from course_mirror.errors import ErrorCode, SourceSetupError
from course_mirror.models.locator import DirectLocator
from course_mirror.storage.database import (
    course_slug_from_url,
    create_session_factory,
    create_state_engine,
    init_schema,
    state_db_path,
)
from course_mirror.storage.lesson_repository import LessonStateStore, StatusSummary
from course_mirror.sync_orchestrator import SyncReport

COURSE_URL = "https://school.com/course/classroom"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        output_dir=tmp_path / "out",
        state_dir=tmp_path / "state",
    )


async def _seed_state(settings: Settings) -> None:
    """Course with one downloaded, one unsupported and one failed lesson."""
    engine = create_state_engine(
        state_db_path(settings.state_dir, course_slug_from_url(COURSE_URL))
    )
    await init_schema(engine)
    store = LessonStateStore(create_session_factory(engine))
    try:
        course = await store.upsert_course(
            slug="school-com-course-classroom", name="Course", source_url=COURSE_URL
        )
        module = await store.upsert_module(
            course_id=course.id, slug="m0", title="Module", position=0
        )
        ids = []
        for i in range(3):
            lesson, _ = await store.upsert_lesson(
                module_id=module.id,
                slug=f"l{i}",
                title=f"Lesson {i}",
                url=f"{COURSE_URL}/l{i}",
                position=i,
            )
            ids.append(lesson.id)
        await store.update_course_counts(course.id)
        await store.mark_validated(
            ids[0],
            video_type="hls",
            video_url=None,
            locator=DirectLocator(url="https://cdn.example.com/v.m3u8"),
        )
        await store.mark_downloaded(ids[0], downloaded_bytes=10)
        await store.mark_error(
            ids[1],
            code=ErrorCode.UNSUPPORTED_PROVIDER,
            message="youtube videos are not supported",
            video_type="youtube",
        )
        await store.mark_error(ids[2], code=ErrorCode.FETCH_FAILED, message="HTTP 403")
    finally:
        await engine.dispose()


class TestParser:
    def test_sync_options(self) -> None:
        args = build_parser().parse_args(
            [
                "sync",
                COURSE_URL,
                "--source",
                "mysite.source:create",
                "--resume",
                "--limit",
                "5",
                "--quality",
                "720p",
            ]
        )
        assert args.command == "sync"
        assert args.url == COURSE_URL
        assert args.resume is True
        assert args.dry_run is False
        assert args.limit == 5
        assert args.quality == VideoQuality.P720
        assert args.skip_videos is False
        assert args.force is False

    def test_force_and_skip_videos(self) -> None:
        args = build_parser().parse_args(
            ["sync", COURSE_URL, "--source", "a:b", "-f", "--skip-videos"]
        )
        assert args.force is True
        assert args.skip_videos is True

    def test_status_url_optional(self) -> None:
        args = build_parser().parse_args(["status", "-a"])
        assert args.url is None
        assert args.all is True
        assert args.errors is False

    def test_source_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sync", COURSE_URL])


class TestLoadSourceFactory:
    def test_loads_attribute(self) -> None:
        assert load_source_factory("course_mirror.cli:build_parser") is build_parser

    def test_malformed(self) -> None:
        with pytest.raises(ValueError, match="module:factory"):
            load_source_factory("course_mirror.cli")


class TestFormatReport:
    def test_dry_run(self) -> None:
        report = SyncReport(course_slug="c", dry_run=True, would_validate=3, would_download=4)
        lines = format_report(report)
        assert "Dry run: 3 lessons to validate, 4 to download" in lines

    def test_summary_and_errors(self) -> None:
        report = SyncReport(
            course_slug="c",
            summary=StatusSummary(counts={"downloaded": 2, "error": 1}, locked=1),
            errors_by_code={"REMUX_ERROR": 1},
            cancelled=True,
        )
        text = "\n".join(format_report(report))
        assert "downloaded=2" in text
        assert "locked=1" in text
        assert "  REMUX_ERROR: 1" in text
        assert "Interrupted" in text

    def test_interrupted_downloads(self) -> None:
        lines = format_report(SyncReport(course_slug="c", interrupted=2, cancelled=True))
        assert "Stopped 2 downloads midway; they resume next run" in lines


class TestStatus:
    async def test_no_state(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        args = build_parser().parse_args(["status", COURSE_URL])
        assert await show_status(args, settings) == EXIT_FAILED
        assert "No sync state for school-com-course-classroom" in capsys.readouterr().err

    async def test_status_output(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        await _seed_state(settings)
        args = build_parser().parse_args(["status", COURSE_URL])

        assert await show_status(args, settings) == EXIT_OK

        out = capsys.readouterr().out
        assert "Course: Course" in out
        assert "Modules: 1, lessons: 3" in out
        assert "downloaded=1" in out
        assert "error=2" in out
        assert "  FETCH_FAILED: 1" in out
        assert "Unsupported providers: youtube=1" in out

    async def test_error_details(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        await _seed_state(settings)
        args = build_parser().parse_args(["status", COURSE_URL, "--errors"])

        assert await show_status(args, settings) == EXIT_OK

        out = capsys.readouterr().out
        assert "  • Module > Lesson 2" in out
        assert "    HTTP 403" in out
        assert "    Code: FETCH_FAILED" in out
        assert "Pending lessons:" not in out

    async def test_pending_grouped_by_module(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        await _seed_state(settings)
        await reset_errors(build_parser().parse_args(["reset-errors", COURSE_URL]), settings)
        capsys.readouterr()

        args = build_parser().parse_args(["status", COURSE_URL, "--pending"])
        assert await show_status(args, settings) == EXIT_OK

        out = capsys.readouterr().out
        assert "Pending lessons:\n  Module\n    • Lesson 1\n    • Lesson 2\n" in out
        assert "Failed lessons:" not in out

    async def test_list_without_url(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        args = build_parser().parse_args(["status"])
        assert await show_status(args, settings) == EXIT_OK
        assert "No courses synced yet." in capsys.readouterr().out

        await _seed_state(settings)
        assert await show_status(args, settings) == EXIT_OK

        out = capsys.readouterr().out
        assert "Course\n  1/3 downloaded\n  2 errors\n" in out

    async def test_reset_errors(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        await _seed_state(settings)
        args = build_parser().parse_args(["reset-errors", COURSE_URL])

        assert await reset_errors(args, settings) == EXIT_OK
        assert "Reset 2 failed lessons to pending" in capsys.readouterr().out

        await show_status(build_parser().parse_args(["status", COURSE_URL]), settings)
        assert "pending=2" in capsys.readouterr().out


class TestSync:
    async def test_setup_failure_exit_code(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        source = AsyncMock()
        source.start.side_effect = SourceSetupError("login rejected")
        args = build_parser().parse_args(["sync", COURSE_URL, "--source", "x:y"])

        with patch("course_mirror.cli.load_source_factory", return_value=lambda s: source):
            code = await run_sync(args, settings)

        assert code == EXIT_SETUP_FAILED
        assert "login rejected" in capsys.readouterr().err
        source.discover_structure.assert_not_awaited()

    async def test_scan_failure_exit_code(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        source = AsyncMock()
        source.discover_structure.side_effect = RuntimeError("sidebar missing")
        args = build_parser().parse_args(["sync", COURSE_URL, "--source", "x:y"])

        with patch("course_mirror.cli.load_source_factory", return_value=lambda s: source):
            code = await run_sync(args, settings)

        assert code == EXIT_FAILED
        assert "Scan failed" in capsys.readouterr().err
        source.stop.assert_awaited_once()


class TestMain:
    def test_exit_code(self, settings: Settings) -> None:
        with (
            patch("course_mirror.cli.get_settings", return_value=settings),
            patch("course_mirror.cli.configure_logging"),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["status", COURSE_URL])
        assert exc_info.value.code == EXIT_FAILED
