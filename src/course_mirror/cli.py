"""Command-line entry point.

Usage::

    course-mirror <command> [options]

Commands:
    sync            Mirror a course (Scan -> Validate -> Extract -> Download)
    status          Show per-status lesson counts and grouped errors, or
                    list every synced course when no URL is given
    reset-errors    Return all failed lessons to pending

``sync`` needs a course source for the target platform, given as
``--source package.module:factory``. The factory receives the settings
and returns an object implementing ``CourseSource``.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from course_mirror.cancellation import (
    FORCED_EXIT_CODE,
    CancellationToken,
    install_signal_handlers,
)
from course_mirror.collaborators import CourseSource
from course_mirror.config import Settings, VideoQuality, get_settings
from course_mirror.errors import CourseMirrorError, ErrorCode, ScanError, SourceSetupError
from course_mirror.logging_config import configure_logging
from course_mirror.storage.database import (
    course_slug_from_url,
    create_session_factory,
    create_state_engine,
    init_schema,
    state_db_path,
)
from course_mirror.storage.file_layout import LocalFileLayout
from course_mirror.storage.lesson_repository import LessonStateStore
from course_mirror.storage.orm import LessonStatus
from course_mirror.streams.downloader import AdaptiveDownloader
from course_mirror.streams.http import create_http_client
from course_mirror.streams.remux import RemuxTool
from course_mirror.streams.resolver import StreamResolver
from course_mirror.sync_orchestrator import SyncOptions, SyncOrchestrator, SyncReport

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_SETUP_FAILED = 2


def load_source_factory(target: str) -> Callable[[Settings], CourseSource]:
    """Import ``package.module:attribute``."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        msg = f"Expected 'module:factory', got {target!r}"
        raise ValueError(msg)
    module = importlib.import_module(module_name)
    factory: Callable[[Settings], CourseSource] = getattr(module, attr)
    return factory


def format_report(report: SyncReport) -> list[str]:
    lines = [f"Course: {report.course_slug}"]
    if report.dry_run:
        lines.append(
            f"Dry run: {report.would_validate} lessons to validate, "
            f"{report.would_download} to download"
        )
    else:
        lines.append(
            f"Validated {report.validated}, skipped {report.skipped}, "
            f"validation errors {report.validation_errors}"
        )
        lines.append(
            f"Downloaded {report.downloaded} of {report.download_tasks} tasks "
            f"({report.already_downloaded} already on disk), "
            f"errors {report.download_errors}, retry rounds {report.retry_rounds}"
        )
        if report.interrupted:
            lines.append(
                f"Stopped {report.interrupted} downloads midway; they resume next run"
            )
    if report.remux_unavailable:
        lines.append(f"Downloads skipped: {report.remux_unavailable}")
    if report.summary is not None:
        lines.append(_format_counts(report.summary.counts, report.summary.locked))
    if report.errors_by_code:
        lines.append("Errors by code:")
        lines.extend(
            f"  {code}: {count}" for code, count in report.errors_by_code.items()
        )
    lines.extend(f"Failure log: {path}" for path in report.failure_logs)
    if report.cancelled:
        lines.append("Interrupted: progress saved, run again to continue.")
    return lines


def _format_counts(counts: dict[str, int], locked: int) -> str:
    parts = [f"{status}={counts.get(status, 0)}" for status in LessonStatus]
    return "Lessons: " + ", ".join(parts) + f", locked={locked}"


async def _open_db(db_path: Path) -> tuple[AsyncEngine, LessonStateStore]:
    engine = create_state_engine(db_path)
    await init_schema(engine)
    return engine, LessonStateStore(create_session_factory(engine))


async def _open_store(settings: Settings, url: str, *, create: bool) -> Any:
    slug = course_slug_from_url(url)
    db_path = state_db_path(settings.state_dir, slug)
    if not create and not db_path.exists():
        return slug, None, None
    engine, store = await _open_db(db_path)
    return slug, engine, store


async def run_sync(args: argparse.Namespace, settings: Settings) -> int:
    """Run one sync and return the process exit code."""
    try:
        factory = load_source_factory(args.source)
    except (ValueError, ImportError, AttributeError) as exc:
        print(f"Cannot load course source {args.source!r}: {exc}", file=sys.stderr)
        return EXIT_SETUP_FAILED
    source = factory(settings)
    slug, engine, store = await _open_store(settings, args.url, create=True)
    logger.info("sync_command_started", course_slug=slug, source=args.source)

    token = CancellationToken()
    restore_signals = install_signal_handlers(token)
    client = create_http_client(settings)
    try:
        try:
            await source.start()
        except SourceSetupError as exc:
            print(f"Setup failed: {exc}", file=sys.stderr)
            return EXIT_SETUP_FAILED

        resolver = StreamResolver(client)
        downloader = AdaptiveDownloader(
            client,
            RemuxTool(settings.remux_binary, timeout=settings.remux_timeout),
            resolver,
            cancel=token,
        )
        orchestrator = SyncOrchestrator(
            store=store,
            source=source,
            layout_factory=lambda course: LocalFileLayout(
                settings.output_dir, course.name, client
            ),
            resolver=resolver,
            downloader=downloader,
            settings=settings,
            course_slug=slug,
            cancel=token,
        )
        options = SyncOptions(
            dry_run=args.dry_run,
            resume=args.resume,
            limit=args.limit,
            retry_errors=args.retry_errors,
            skip_content=args.skip_content,
            skip_videos=args.skip_videos,
            force=args.force,
            quality=args.quality,
        )
        try:
            report = await orchestrator.run(args.url, options)
        except ScanError as exc:
            print(f"Scan failed: {exc}", file=sys.stderr)
            return EXIT_FAILED
        finally:
            await source.stop()

        for line in format_report(report):
            print(line)
        return FORCED_EXIT_CODE if report.cancelled else EXIT_OK
    finally:
        restore_signals()
        await client.aclose()
        await engine.dispose()


async def list_courses(settings: Settings) -> int:
    """Print a short summary of every course with a state database."""
    db_paths = sorted(settings.state_dir.glob("*.db")) if settings.state_dir.is_dir() else []
    if not db_paths:
        print("No courses synced yet.")
        return EXIT_OK
    for db_path in db_paths:
        engine, store = await _open_db(db_path)
        try:
            course = await store.get_course()
            summary = await store.status_summary()
        finally:
            await engine.dispose()
        total = course.lesson_count if course is not None else summary.total
        print(course.name if course is not None and course.name else db_path.stem)
        print(f"  {summary[LessonStatus.DOWNLOADED]}/{total} downloaded")
        if summary[LessonStatus.ERROR]:
            print(f"  {summary[LessonStatus.ERROR]} errors")
    return EXIT_OK


async def show_status(args: argparse.Namespace, settings: Settings) -> int:
    if args.url is None:
        return await list_courses(settings)
    slug, engine, store = await _open_store(settings, args.url, create=False)
    if store is None:
        print(f"No sync state for {slug}", file=sys.stderr)
        return EXIT_FAILED
    try:
        course = await store.get_course()
        summary = await store.status_summary()
        by_code = await store.error_code_summary()
        video_types = await store.video_type_summary()
        unsupported = await store.lessons_by_error_code(ErrorCode.UNSUPPORTED_PROVIDER)
        failed = (
            await store.lessons_with_status(LessonStatus.ERROR)
            if args.errors or args.all
            else []
        )
        pending = (
            await store.lessons_with_status(LessonStatus.PENDING)
            if args.pending or args.all
            else []
        )
    finally:
        await engine.dispose()

    if course is not None:
        print(f"Course: {course.name} ({course.source_url})")
        print(f"Modules: {course.module_count}, lessons: {course.lesson_count}")
        if course.last_synced_at is not None:
            print(f"Last sync: {course.last_synced_at.isoformat()}")
    print(_format_counts(summary.counts, summary.locked))
    if video_types:
        print("Video types: " + ", ".join(f"{k}={v}" for k, v in video_types.items()))
    if by_code:
        print("Errors by code:")
        for code, count in by_code.items():
            print(f"  {code}: {count}")
    if unsupported:
        per_type: dict[str, int] = {}
        for lesson in unsupported:
            key = lesson.video_type or "unknown"
            per_type[key] = per_type.get(key, 0) + 1
        print("Unsupported providers: " + ", ".join(f"{k}={v}" for k, v in per_type.items()))
    if failed:
        print("Failed lessons:")
        for lesson in failed:
            print(f"  • {lesson.module.title} > {lesson.title}")
            if lesson.error_message:
                print(f"    {lesson.error_message}")
            if lesson.error_code:
                print(f"    Code: {lesson.error_code}")
    if pending:
        print("Pending lessons:")
        current_module: int | None = None
        for lesson in pending:
            if lesson.module_id != current_module:
                current_module = lesson.module_id
                print(f"  {lesson.module.title}")
            print(f"    • {lesson.title}")
    return EXIT_OK


async def reset_errors(args: argparse.Namespace, settings: Settings) -> int:
    slug, engine, store = await _open_store(settings, args.url, create=False)
    if store is None:
        print(f"No sync state for {slug}", file=sys.stderr)
        return EXIT_FAILED
    try:
        count = await store.reset_errors()
    finally:
        await engine.dispose()
    print(f"Reset {count} failed lessons to pending")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="course-mirror", description="Mirror online courses to local storage"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # sync
    p = sub.add_parser("sync", help="Mirror a course")
    p.add_argument("url", help="Course root URL")
    p.add_argument("--source", required=True, help="Course source factory module:attr")
    p.add_argument("--dry-run", action="store_true", help="Scan only, report work")
    p.add_argument("--resume", action="store_true", help="Download validated lessons only")
    p.add_argument("--limit", type=int, default=None, help="Scan at most N lessons")
    p.add_argument("--retry-errors", action="store_true", help="Reset failed lessons first")
    p.add_argument("--skip-content", action="store_true", help="Do not save lesson text")
    p.add_argument("--skip-videos", action="store_true", help="Save lesson text only")
    p.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Full rescan: reset failed lessons and resolve every stream again",
    )
    p.add_argument(
        "--quality",
        type=VideoQuality,
        choices=list(VideoQuality),
        default=None,
        help="Preferred video quality",
    )

    # status
    p = sub.add_parser("status", help="Show sync status of a course, or list all")
    p.add_argument("url", nargs="?", default=None, help="Course root URL")
    p.add_argument("--errors", action="store_true", help="List failed lessons")
    p.add_argument("--pending", action="store_true", help="List lessons not validated yet")
    p.add_argument("-a", "--all", action="store_true", help="List failed and pending lessons")

    # reset-errors
    p = sub.add_parser("reset-errors", help="Return failed lessons to pending")
    p.add_argument("url", help="Course root URL")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and dispatch to command handler."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(environment=str(settings.environment), log_level=settings.log_level)

    commands: dict[str, Callable[[argparse.Namespace, Settings], Awaitable[int]]] = {
        "sync": run_sync,
        "status": show_status,
        "reset-errors": reset_errors,
    }
    try:
        code = asyncio.run(commands[args.command](args, settings))
    except CourseMirrorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = EXIT_FAILED
    sys.exit(code)


if __name__ == "__main__":
    main()
