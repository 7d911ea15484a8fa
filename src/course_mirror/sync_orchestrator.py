"""Sync orchestrator: Scan -> Validate -> Extract -> Download, then retries.

The orchestrator is the only component that sequences phases. Each phase
reads its candidates from the ``LessonStateStore``, fans work out over a
``WorkerPool`` and writes every per-lesson outcome back to the store, so a
run can stop at any point and the next one picks up where it left off.

Lesson-local failures are recorded on the lesson and never raised; only a
failed Scan aborts the run.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from course_mirror.cancellation import CancellationToken
from course_mirror.collaborators import CourseSource, FileLayout
from course_mirror.config import Settings, VideoQuality
from course_mirror.errors import (
    DownloadInterrupted,
    ErrorCode,
    LessonError,
    RemuxNotFoundError,
    ScanError,
    WorkerPoolError,
)
from course_mirror.failure_log import FailureLog, FailureRecord, write_failure_log
from course_mirror.models.locator import AuthContext, DownloadTask, locator_url
from course_mirror.models.progress import (
    ContentFailed,
    ContentSaved,
    DownloadFailed,
    DownloadFinished,
    DownloadPercent,
    DownloadQueueProgress,
    EventCallback,
    ExtractCompleted,
    LessonValidated,
    ModuleScanned,
    ScanCompleted,
    ScanStarted,
    SyncEvent,
    ValidateCompleted,
)
from course_mirror.models.structure import DiscoveredCourse, VideoType
from course_mirror.storage.file_layout import safe_filename
from course_mirror.storage.lesson_repository import (
    LessonStateStore,
    StatusSummary,
    SyncPhase,
    stored_locator,
)
from course_mirror.storage.orm import Course, Lesson, LessonStatus
from course_mirror.streams.downloader import AdaptiveDownloader
from course_mirror.streams.resolver import StreamResolver
from course_mirror.worker_pool import WorkerPool, WorkItem

logger = structlog.get_logger()

# Locator kinds whose URLs stay valid between runs. Segment lists carry
# short-lived per-segment tokens and are always captured again.
REUSABLE_LOCATOR_KINDS: frozenset[str] = frozenset({"direct", "playlist"})

LayoutFactory = Callable[[Course], FileLayout]


@dataclass(frozen=True, slots=True)
class SyncOptions:
    dry_run: bool = False
    resume: bool = False
    limit: int | None = None
    retry_errors: bool = False
    skip_content: bool = False
    skip_videos: bool = False
    force: bool = False
    quality: VideoQuality | None = None


@dataclass(slots=True)
class SyncReport:
    """Outcome of one ``SyncOrchestrator.run``."""

    course_slug: str
    dry_run: bool = False
    new_lessons: int = 0
    validated: int = 0
    skipped: int = 0
    validation_errors: int = 0
    download_tasks: int = 0
    downloaded: int = 0
    already_downloaded: int = 0
    download_errors: int = 0
    interrupted: int = 0
    retry_rounds: int = 0
    would_validate: int = 0
    would_download: int = 0
    remux_unavailable: str | None = None
    cancelled: bool = False
    summary: StatusSummary | None = None
    errors_by_code: dict[str, int] = field(default_factory=dict)
    failure_logs: list[Path] = field(default_factory=list)


class SyncOrchestrator:
    """Drives one course through the sync phases.

    Args:
        store: State store of the course being synced.
        source: Site-specific course source.
        layout_factory: Builds the filesystem layout once the course row
            is known (after Scan, or from the store on resume).
        resolver: Stream locator resolver.
        downloader: Adaptive download engine.
        settings: Concurrency and retry configuration.
        course_slug: Stable slug of the course.
        cancel: Token shared with pools and the download engine.
        on_event: Receives progress events of every phase.
    """

    def __init__(
        self,
        *,
        store: LessonStateStore,
        source: CourseSource,
        layout_factory: LayoutFactory,
        resolver: StreamResolver,
        downloader: AdaptiveDownloader,
        settings: Settings,
        course_slug: str,
        cancel: CancellationToken | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self._store = store
        self._source = source
        self._layout_factory = layout_factory
        self._layout: FileLayout | None = None
        self._resolver = resolver
        self._downloader = downloader
        self._settings = settings
        self._course_slug = course_slug
        self._cancel = cancel or CancellationToken()
        self._on_event = on_event
        self._log = logger.bind(course=course_slug)

    # ── Public API ──

    async def run(self, root_url: str, options: SyncOptions | None = None) -> SyncReport:
        """Run the pipeline for ``root_url``.

        Raises:
            ScanError: If structure discovery fails or the structure cannot
                be stored.
        """
        options = options or SyncOptions()
        report = SyncReport(course_slug=self._course_slug, dry_run=options.dry_run)
        # A forced run always rescans
        resume = options.resume and not options.force
        self._log.info(
            "sync_started",
            root_url=root_url,
            dry_run=options.dry_run,
            resume=resume,
            force=options.force,
            limit=options.limit,
        )

        reset_ids: set[int] = set()
        if (options.retry_errors or options.force) and not options.dry_run:
            failed = await self._store.lessons_with_status(LessonStatus.ERROR)
            reset_ids = {lesson.id for lesson in failed}
            await self._store.reset_errors()
        if options.force and not options.dry_run:
            await self._store.reset_for_revalidation()

        course: Course | None
        if resume:
            course = await self._store.get_course()
        else:
            course = await self._scan(root_url, options.limit, report)

        if options.dry_run:
            pending = await self._store.lessons_needing(SyncPhase.VALIDATE)
            validated = await self._store.lessons_needing(SyncPhase.DOWNLOAD)
            report.would_validate = len(pending)
            report.would_download = len(pending) + len(validated)
            return await self._finish(report, course, touch=False)

        if course is None:
            self._log.warning("sync_resume_without_state")
            return await self._finish(report, course, touch=False)
        self._layout = self._layout_factory(course)

        auth = await self._source.auth_context()
        if self._should_continue():
            if not resume:
                await self._validate(auth, report)
            elif reset_ids:
                # Resume skips Validate except for lessons just reset from ERROR
                await self._validate(auth, report, only=reset_ids)
        tasks: list[DownloadTask] = []
        if self._should_continue():
            tasks = await self._extract(
                auth,
                options.quality,
                report,
                with_content=not resume and not options.skip_content,
            )
        if options.skip_videos:
            self._log.info("download_phase_disabled", tasks=len(tasks))
        elif self._should_continue():
            await self._download(tasks, report)

        await self._retry_loop(
            auth, options.quality, report, download=not options.skip_videos
        )
        return await self._finish(report, course, touch=True)

    # ── Scan ──

    async def _scan(
        self, root_url: str, limit: int | None, report: SyncReport
    ) -> Course:
        self._emit(ScanStarted(root_url=root_url))
        try:
            discovered = await self._source.discover_structure(root_url)
        except Exception as exc:
            self._log.error("scan_failed", error=str(exc))
            msg = f"Structure discovery failed for {root_url}: {exc}"
            raise ScanError(msg) from exc

        try:
            course, modules_seen, lessons_seen = await self._store_structure(
                root_url, discovered, limit, report
            )
        except SQLAlchemyError as exc:
            self._log.error("scan_store_failed", error=str(exc))
            msg = f"Could not record the structure of {root_url}: {exc}"
            raise ScanError(msg) from exc

        self._emit(
            ScanCompleted(
                modules=modules_seen,
                lessons=lessons_seen,
                new_lessons=report.new_lessons,
            )
        )
        self._log.info(
            "scan_completed",
            modules=modules_seen,
            lessons=lessons_seen,
            new_lessons=report.new_lessons,
        )
        return course

    async def _store_structure(
        self,
        root_url: str,
        discovered: DiscoveredCourse,
        limit: int | None,
        report: SyncReport,
    ) -> tuple[Course, int, int]:
        course = await self._store.upsert_course(
            slug=self._course_slug, name=discovered.name, source_url=root_url
        )
        remaining = limit
        modules_seen = 0
        lessons_seen = 0
        for module_ref in discovered.modules:
            if remaining is not None and remaining <= 0:
                break
            module = await self._store.upsert_module(
                course_id=course.id,
                slug=module_ref.slug,
                title=module_ref.title,
                position=module_ref.position,
                is_locked=module_ref.is_locked,
            )
            modules_seen += 1
            scanned = 0
            created_count = 0
            for lesson_ref in module_ref.lessons:
                if remaining is not None and remaining <= 0:
                    break
                _, created = await self._store.upsert_lesson(
                    module_id=module.id,
                    slug=lesson_ref.slug,
                    title=lesson_ref.title,
                    url=lesson_ref.url,
                    position=lesson_ref.position,
                    is_locked=lesson_ref.is_locked or module_ref.is_locked,
                )
                scanned += 1
                created_count += int(created)
                if remaining is not None:
                    remaining -= 1
            lessons_seen += scanned
            report.new_lessons += created_count
            self._emit(
                ModuleScanned(
                    module_title=module_ref.title,
                    lesson_count=scanned,
                    new_lessons=created_count,
                )
            )

        await self._store.update_course_counts(course.id)
        return course, modules_seen, lessons_seen

    # ── Validate ──

    async def _validate(
        self,
        auth: AuthContext | None,
        report: SyncReport,
        *,
        only: set[int] | None = None,
    ) -> None:
        lessons = await self._store.lessons_needing(SyncPhase.VALIDATE)
        if only is not None:
            lessons = [lesson for lesson in lessons if lesson.id in only]
        if not lessons:
            return
        self._log.info("validate_started", lessons=len(lessons))
        before = (report.validated, report.skipped, report.validation_errors)

        async def _handle(handle: Any, lesson: Lesson) -> None:
            await self._validate_lesson(handle, lesson, auth, report)

        async def _unavailable(lesson: Lesson, message: str) -> None:
            await self._store.mark_error(
                lesson.id, code=ErrorCode.VALIDATION_FAILED, message=message
            )
            self._record_validation_error(lesson, ErrorCode.VALIDATION_FAILED, report)

        await self._run_with_handles(lessons, _handle, on_unavailable=_unavailable)
        self._emit(
            ValidateCompleted(
                validated=report.validated - before[0],
                skipped=report.skipped - before[1],
                errors=report.validation_errors - before[2],
            )
        )

    async def _validate_lesson(
        self,
        handle: Any,
        lesson: Lesson,
        auth: AuthContext | None,
        report: SyncReport,
    ) -> None:
        log = self._log.bind(lesson_id=lesson.id, phase="validate")
        code: ErrorCode | None = None
        try:
            reference = await self._source.resolve_video_reference(handle, lesson.url)
        except Exception as exc:
            code, message = ErrorCode.VALIDATION_FAILED, str(exc) or type(exc).__name__
            await self._store.mark_error(lesson.id, code=code, message=message)
            log.warning("lesson_validation_failed", error_code=code, error=message)
        else:
            if reference is None:
                await self._store.mark_skipped(lesson.id)
                report.skipped += 1
                log.debug("lesson_without_video")
                self._emit(
                    LessonValidated(
                        lesson_id=lesson.id,
                        title=lesson.title,
                        status=LessonStatus.SKIPPED,
                    )
                )
                return
            try:
                locator = await self._resolver.resolve(reference, auth)
            except LessonError as exc:
                code, message = exc.code, exc.message
            except Exception as exc:
                code, message = ErrorCode.VALIDATION_FAILED, str(exc) or type(exc).__name__
            else:
                await self._store.mark_validated(
                    lesson.id,
                    video_type=reference.type,
                    video_url=reference.display_url,
                    locator=locator,
                )
                report.validated += 1
                self._emit(
                    LessonValidated(
                        lesson_id=lesson.id,
                        title=lesson.title,
                        status=LessonStatus.VALIDATED,
                    )
                )
                return
            await self._store.mark_error(
                lesson.id,
                code=code,
                message=message,
                video_type=reference.type,
                video_url=reference.display_url,
            )
            log.warning("lesson_validation_failed", error_code=code, error=message)

        self._record_validation_error(lesson, code, report)

    def _record_validation_error(
        self, lesson: Lesson, code: ErrorCode | None, report: SyncReport
    ) -> None:
        report.validation_errors += 1
        self._emit(
            LessonValidated(
                lesson_id=lesson.id,
                title=lesson.title,
                status=LessonStatus.ERROR,
                error_code=code,
            )
        )

    # ── Extract ──

    async def _extract(
        self,
        auth: AuthContext | None,
        quality: VideoQuality | None,
        report: SyncReport,
        *,
        with_content: bool,
    ) -> list[DownloadTask]:
        """Save lesson content and build download tasks.

        Lessons whose video is already on disk are marked DOWNLOADED instead
        of being queued again.
        """
        layout = self._require_layout()
        lessons = await self._store.lessons_needing(SyncPhase.EXTRACT)
        tasks: list[DownloadTask] = []
        already = 0
        for lesson in lessons:
            if lesson.status != LessonStatus.VALIDATED:
                continue
            video_path = layout.video_path(lesson)
            if layout.exists(video_path):
                await self._store.mark_downloaded(
                    lesson.id, downloaded_bytes=video_path.stat().st_size
                )
                already += 1
                continue
            task = await self._build_task(lesson, video_path, auth, quality)
            if task is not None:
                tasks.append(task)

        if with_content:
            needs_content = [
                lesson
                for lesson in lessons
                if not layout.exists(layout.markdown_path(lesson))
            ]
            if needs_content:
                await self._run_with_handles(
                    needs_content,
                    self._extract_content,
                    on_unavailable=self._content_unavailable,
                )

        report.already_downloaded += already
        report.download_tasks += len(tasks)
        self._emit(ExtractCompleted(download_tasks=len(tasks), already_downloaded=already))
        self._log.info("extract_completed", download_tasks=len(tasks), already=already)
        return tasks

    async def _extract_content(self, handle: Any, lesson: Lesson) -> None:
        layout = self._require_layout()
        markdown_path = layout.markdown_path(lesson)
        try:
            content = await self._source.extract_content(handle, lesson.url)
            await layout.save_markdown(markdown_path, content.markdown)
            for attachment in content.attachments:
                target = markdown_path.parent / safe_filename(attachment.name)
                await layout.download_file(str(attachment.url), target)
        except Exception as exc:
            # Content is best effort; the lesson's status is left untouched.
            self._log.warning(
                "lesson_content_failed", lesson_id=lesson.id, error=str(exc)
            )
            self._emit(ContentFailed(lesson_id=lesson.id, message=str(exc)))
            return
        self._emit(ContentSaved(lesson_id=lesson.id, path=str(markdown_path)))

    async def _content_unavailable(self, lesson: Lesson, message: str) -> None:
        self._emit(ContentFailed(lesson_id=lesson.id, message=message))

    async def _build_task(
        self,
        lesson: Lesson,
        destination: Path,
        auth: AuthContext | None,
        quality: VideoQuality | None,
    ) -> DownloadTask | None:
        locator = stored_locator(lesson)
        if locator is None:
            await self._store.mark_error(
                lesson.id,
                code=ErrorCode.VALIDATION_FAILED,
                message="Validated lesson has no resolved stream",
            )
            return None
        return DownloadTask(
            lesson_id=lesson.id,
            lesson_name=lesson.title,
            locator=locator,
            video_type=lesson.video_type or VideoType.UNKNOWN,
            video_url=lesson.video_url or locator_url(locator),
            destination=destination,
            quality=quality or self._settings.video_quality,
            auth=auth,
        )

    # ── Download ──

    async def _download(self, tasks: Sequence[DownloadTask], report: SyncReport) -> None:
        if not tasks:
            return
        try:
            await self._downloader.ensure_ready()
        except RemuxNotFoundError as exc:
            report.remux_unavailable = str(exc)
            self._log.error("download_phase_skipped", reason=str(exc), tasks=len(tasks))
            return

        by_id = {str(task.lesson_id): task for task in tasks}
        pool: WorkerPool[DownloadTask] = WorkerPool(
            [WorkItem(id=key, payload=task) for key, task in by_id.items()],
            concurrency=self._settings.download_concurrency,
            retries=self._settings.task_retry_attempts,
            on_progress=lambda done, total: self._emit(
                DownloadQueueProgress(done=done, total=total)
            ),
            cancel=self._cancel,
        )
        self._log.info(
            "download_started",
            tasks=len(tasks),
            concurrency=self._settings.download_concurrency,
        )

        async def _handle(task: DownloadTask) -> None:
            def _percent(value: float) -> None:
                self._emit(DownloadPercent(lesson_id=task.lesson_id, percent=value))

            result = await self._downloader.download(task, on_progress=_percent)
            await self._store.mark_downloaded(
                task.lesson_id, downloaded_bytes=result.bytes_written
            )
            self._emit(
                DownloadFinished(
                    lesson_id=task.lesson_id, bytes_written=result.bytes_written
                )
            )

        result = await pool.process(_handle)

        records: list[FailureRecord] = []
        interrupted = 0
        for failure in result.errors:
            task = by_id[failure.id]
            if isinstance(failure.error, DownloadInterrupted):
                # Stays VALIDATED; the next run resumes from the kept segments
                interrupted += 1
                self._log.info(
                    "download_interrupted",
                    lesson_id=task.lesson_id,
                    reason=failure.message,
                )
                continue
            code = _error_code(failure.error)
            message = (
                failure.error.message
                if isinstance(failure.error, LessonError)
                else failure.message
            )
            await self._store.mark_error(task.lesson_id, code=code, message=message)
            self._emit(
                DownloadFailed(lesson_id=task.lesson_id, error_code=code, message=message)
            )
            records.append(
                FailureRecord(
                    lesson_name=task.lesson_name,
                    video_url=task.video_url,
                    video_type=task.video_type,
                    error=message,
                    error_code=code,
                )
            )

        failed = result.failed - interrupted
        report.downloaded += result.completed
        report.download_errors += failed
        report.interrupted += interrupted
        self._log.info(
            "download_completed",
            completed=result.completed,
            failed=failed,
            interrupted=interrupted,
            not_started=result.not_started,
        )
        if records:
            log_path = write_failure_log(
                self._require_layout().course_dir(),
                FailureLog(
                    total_attempts=result.completed + failed,
                    successful=result.completed,
                    failed=failed,
                    concurrency=self._settings.download_concurrency,
                    retry_attempts=self._settings.task_retry_attempts,
                    failures=records,
                ),
            )
            report.failure_logs.append(log_path)
            self._log.info("failure_log_written", path=str(log_path))

    # ── Retry ──

    async def _retry_loop(
        self,
        auth: AuthContext | None,
        quality: VideoQuality | None,
        report: SyncReport,
        *,
        download: bool = True,
    ) -> None:
        max_retries = self._settings.max_retries
        for round_number in range(1, max_retries + 1):
            if not self._should_continue():
                return
            candidates = await self._store.lessons_to_retry(max_retries)
            if not download:
                # Failed downloads wait for a run that downloads again
                candidates = [
                    lesson for lesson in candidates if not _has_reusable_stream(lesson)
                ]
            if not candidates:
                return
            report.retry_rounds += 1
            requeued_validated = 0
            for lesson in candidates:
                await self._store.increment_retry(lesson.id)
                if _has_reusable_stream(lesson):
                    await self._store.requeue_validated(lesson.id)
                    requeued_validated += 1
                else:
                    await self._store.reset_to_pending(lesson.id)
            self._log.info(
                "retry_round_started",
                round=round_number,
                lessons=len(candidates),
                requeued_validated=requeued_validated,
            )

            await self._validate(auth, report)
            if not self._should_continue():
                return
            tasks = await self._extract(auth, quality, report, with_content=False)
            if download and self._should_continue():
                await self._download(tasks, report)

    # ── Helpers ──

    async def _run_with_handles(
        self,
        lessons: Sequence[Lesson],
        handler: Callable[[Any, Lesson], Awaitable[None]],
        *,
        on_unavailable: Callable[[Lesson, str], Awaitable[None]] | None = None,
    ) -> None:
        """Run ``handler`` per lesson over source handles.

        When no handle can be opened at all, ``on_unavailable`` records the
        outcome of every lesson and the run carries on with the next phase.
        """
        pool: WorkerPool[Lesson] = WorkerPool(
            [WorkItem(id=str(lesson.id), payload=lesson) for lesson in lessons],
            concurrency=self._settings.extract_concurrency,
            cancel=self._cancel,
        )
        try:
            result = await pool.process_with_handles(self._source.open_handle, handler)
        except WorkerPoolError as exc:
            self._log.error("worker_handles_unavailable", lessons=len(lessons), error=str(exc))
            if on_unavailable is not None:
                for lesson in lessons:
                    await on_unavailable(lesson, str(exc))
            return
        for handle in result.handles:
            try:
                await self._source.close_handle(handle)
            except Exception as exc:
                self._log.warning("worker_handle_close_failed", error=str(exc))
        for failure in result.errors:
            # Handlers record their own outcome; anything here is unexpected.
            self._log.error("lesson_task_crashed", lesson_id=failure.id, error=failure.message)

    async def _finish(
        self, report: SyncReport, course: Course | None, *, touch: bool
    ) -> SyncReport:
        if touch and course is not None:
            await self._store.touch_synced(course.id)
        report.summary = await self._store.status_summary()
        report.errors_by_code = await self._store.error_code_summary()
        report.cancelled = self._cancel.cancelled
        self._log.info(
            "sync_finished",
            downloaded=report.summary[LessonStatus.DOWNLOADED],
            errors=report.summary[LessonStatus.ERROR],
            skipped=report.summary[LessonStatus.SKIPPED],
            cancelled=report.cancelled,
        )
        return report

    def _require_layout(self) -> FileLayout:
        if self._layout is None:
            msg = "File layout is not initialised before Scan"
            raise RuntimeError(msg)
        return self._layout

    def _should_continue(self) -> bool:
        return self._cancel.should_continue()

    def _emit(self, event: SyncEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)


def _error_code(error: BaseException | None) -> ErrorCode:
    if isinstance(error, LessonError):
        return error.code
    if isinstance(error, RemuxNotFoundError):
        return ErrorCode.REMUX_NOT_FOUND
    return ErrorCode.DOWNLOAD_FAILED


def _has_reusable_stream(lesson: Lesson) -> bool:
    return bool(lesson.resolved_stream_url) and (
        lesson.locator_kind in REUSABLE_LOCATOR_KINDS
    )
