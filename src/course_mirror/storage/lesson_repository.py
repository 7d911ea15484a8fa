"""Lesson State Store: durable course/module/lesson sync state.

Every mutation runs in its own short session and commits immediately, so
concurrent workers never share a session and a crash loses at most the
lesson that was in flight. No two workers are handed the same lesson, so
single-row updates need no extra locking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from pydantic import TypeAdapter
from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from course_mirror.errors import ErrorCode
from course_mirror.models.locator import StreamLocator, locator_url
from course_mirror.storage.orm import Course, Lesson, LessonStatus, Module

logger = structlog.get_logger()

_locator_adapter: TypeAdapter[Any] = TypeAdapter(StreamLocator)

# Valid lesson status transitions
LESSON_TRANSITIONS: dict[str, set[str]] = {
    LessonStatus.PENDING: {
        LessonStatus.VALIDATED,
        LessonStatus.SKIPPED,
        LessonStatus.ERROR,
    },
    LessonStatus.VALIDATED: {
        LessonStatus.DOWNLOADED,
        LessonStatus.ERROR,
        LessonStatus.PENDING,
    },
    LessonStatus.SKIPPED: {LessonStatus.PENDING},
    LessonStatus.ERROR: {
        LessonStatus.PENDING,
        LessonStatus.VALIDATED,
        LessonStatus.ERROR,
    },
    LessonStatus.DOWNLOADED: {LessonStatus.DOWNLOADED},
}


class SyncPhase(StrEnum):
    SCAN = "scan"
    VALIDATE = "validate"
    EXTRACT = "extract"
    DOWNLOAD = "download"


@dataclass(frozen=True, slots=True)
class StatusSummary:
    """Lesson counts per status; locked lessons are counted separately."""

    counts: dict[str, int] = field(default_factory=dict)
    locked: int = 0

    def __getitem__(self, status: str) -> int:
        return self.counts.get(status, 0)

    @property
    def total(self) -> int:
        return sum(self.counts.values()) + self.locked


def stored_locator(lesson: Lesson) -> StreamLocator | None:
    """Rebuild the resolved locator persisted on ``lesson``."""
    if lesson.locator is None:
        return None
    locator: StreamLocator = _locator_adapter.validate_python(lesson.locator)
    return locator


def _now() -> datetime:
    return datetime.now(UTC)


def _unlocked_lessons() -> Select[tuple[Lesson]]:
    return (
        select(Lesson)
        .join(Module, Lesson.module_id == Module.id)
        .where(Lesson.is_locked.is_(False), Module.is_locked.is_(False))
        .options(selectinload(Lesson.module))
        .order_by(Module.position, Lesson.position, Lesson.id)
    )


class LessonStateStore:
    """Repository over the per-course state database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Structure ──

    async def get_course(self) -> Course | None:
        """Return the course stored in this database, if scanned."""
        async with self._session_factory() as session:
            result = await session.execute(select(Course).limit(1))
            return result.scalar_one_or_none()

    async def upsert_course(self, *, slug: str, name: str, source_url: str) -> Course:
        async with self._session_factory() as session:
            result = await session.execute(select(Course).where(Course.slug == slug))
            course = result.scalar_one_or_none()
            if course is None:
                course = Course(slug=slug, name=name, source_url=source_url)
                session.add(course)
            else:
                course.name = name
                course.source_url = source_url
            await session.commit()
            return course

    async def upsert_module(
        self,
        *,
        course_id: int,
        slug: str,
        title: str,
        position: int,
        is_locked: bool = False,
    ) -> Module:
        """Insert or refresh a module by slug; its id never changes."""
        async with self._session_factory() as session:
            result = await session.execute(select(Module).where(Module.slug == slug))
            module = result.scalar_one_or_none()
            if module is None:
                module = Module(
                    course_id=course_id,
                    slug=slug,
                    title=title,
                    position=position,
                    is_locked=is_locked,
                )
                session.add(module)
            else:
                module.title = title
                module.position = position
                module.is_locked = is_locked
            await session.commit()
            return module

    async def upsert_lesson(
        self,
        *,
        module_id: int,
        slug: str,
        title: str,
        url: str,
        position: int,
        is_locked: bool = False,
    ) -> tuple[Lesson, bool]:
        """Insert or refresh a lesson by ``(module_id, slug)``.

        Known lessons keep their status and retry count; only the
        descriptive columns are refreshed. A lesson whose slug changed but
        whose URL did not is the same lesson: its row takes the new slug.

        Returns:
            The lesson row and whether it was newly created.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Lesson).where(Lesson.module_id == module_id, Lesson.slug == slug)
            )
            lesson = result.scalar_one_or_none()
            if lesson is None:
                result = await session.execute(
                    select(Lesson).where(Lesson.module_id == module_id, Lesson.url == url)
                )
                lesson = result.scalar_one_or_none()
                if lesson is not None:
                    logger.info(
                        "lesson_slug_changed",
                        lesson_id=lesson.id,
                        old_slug=lesson.slug,
                        new_slug=slug,
                    )
                    lesson.slug = slug
            created = lesson is None
            if lesson is None:
                lesson = Lesson(
                    module_id=module_id,
                    slug=slug,
                    title=title,
                    url=url,
                    position=position,
                    is_locked=is_locked,
                    status=LessonStatus.PENDING,
                    retry_count=0,
                )
                session.add(lesson)
            else:
                lesson.title = title
                lesson.url = url
                lesson.position = position
                lesson.is_locked = is_locked
            await session.commit()
            return lesson, created

    async def update_course_counts(self, course_id: int) -> None:
        async with self._session_factory() as session:
            module_count = await session.scalar(
                select(func.count(Module.id)).where(Module.course_id == course_id)
            )
            lesson_count = await session.scalar(
                select(func.count(Lesson.id))
                .join(Module, Lesson.module_id == Module.id)
                .where(Module.course_id == course_id)
            )
            await session.execute(
                update(Course)
                .where(Course.id == course_id)
                .values(
                    module_count=module_count or 0,
                    lesson_count=lesson_count or 0,
                )
            )
            await session.commit()

    async def touch_synced(self, course_id: int, *, now: datetime | None = None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Course)
                .where(Course.id == course_id)
                .values(last_synced_at=now or _now())
            )
            await session.commit()

    # ── Queries ──

    async def get_lesson(self, lesson_id: int) -> Lesson | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Lesson)
                .where(Lesson.id == lesson_id)
                .options(selectinload(Lesson.module))
            )
            return result.scalar_one_or_none()

    async def lessons_needing(self, phase: SyncPhase) -> list[Lesson]:
        """Ordered, unlocked candidates for ``phase``."""
        stmt = _unlocked_lessons()
        if phase == SyncPhase.SCAN:
            stmt = stmt.where(
                Lesson.status == LessonStatus.PENDING,
                Lesson.last_validated_at.is_(None),
            )
        elif phase == SyncPhase.VALIDATE:
            stmt = stmt.where(Lesson.status == LessonStatus.PENDING)
        elif phase == SyncPhase.EXTRACT:
            # Lessons without video still get their content saved
            stmt = stmt.where(
                Lesson.status.in_([LessonStatus.VALIDATED, LessonStatus.SKIPPED])
            )
        else:
            stmt = stmt.where(Lesson.status == LessonStatus.VALIDATED)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def lessons_to_retry(self, max_retries: int) -> list[Lesson]:
        """Unlocked ERROR lessons that still have retry budget left."""
        stmt = _unlocked_lessons().where(
            Lesson.status == LessonStatus.ERROR,
            Lesson.retry_count < max_retries,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def lessons_with_status(self, status: LessonStatus) -> list[Lesson]:
        """Ordered, unlocked lessons in ``status`` with their module loaded."""
        stmt = _unlocked_lessons().where(Lesson.status == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def lessons_by_error_code(self, code: ErrorCode | str) -> list[Lesson]:
        stmt = _unlocked_lessons().where(
            Lesson.status == LessonStatus.ERROR,
            Lesson.error_code == str(code),
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def status_summary(self) -> StatusSummary:
        """Counts per status over unlocked lessons plus the locked count."""
        locked_clause = or_(Lesson.is_locked.is_(True), Module.is_locked.is_(True))
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Lesson.status, func.count(Lesson.id))
                .join(Module, Lesson.module_id == Module.id)
                .where(~locked_clause)
                .group_by(Lesson.status)
            )
            locked = await session.scalar(
                select(func.count(Lesson.id))
                .join(Module, Lesson.module_id == Module.id)
                .where(locked_clause)
            )
        counts = {str(status): 0 for status in LessonStatus}
        for status, count in rows.all():
            counts[status] = count
        return StatusSummary(counts=counts, locked=locked or 0)

    async def error_code_summary(self) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Lesson.error_code, func.count(Lesson.id))
                .where(Lesson.status == LessonStatus.ERROR)
                .group_by(Lesson.error_code)
                .order_by(func.count(Lesson.id).desc())
            )
            return {code or "UNKNOWN": count for code, count in rows.all()}

    async def video_type_summary(self) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Lesson.video_type, func.count(Lesson.id))
                .where(Lesson.video_type.is_not(None))
                .group_by(Lesson.video_type)
                .order_by(func.count(Lesson.id).desc())
            )
            return dict(rows.tuples().all())

    # ── Mutations ──

    async def _transition(
        self, lesson_id: int, target: LessonStatus, **values: object
    ) -> Lesson:
        """Move one lesson to ``target`` and apply column ``values``.

        Raises:
            LookupError: If the lesson does not exist.
            ValueError: If the status transition is not allowed.
        """
        async with self._session_factory() as session:
            lesson = await session.get(Lesson, lesson_id)
            if lesson is None:
                msg = f"Lesson not found: {lesson_id}"
                raise LookupError(msg)

            allowed = LESSON_TRANSITIONS.get(lesson.status, set())
            if target not in allowed:
                msg = f"Invalid transition: {lesson.status} -> {target}"
                raise ValueError(msg)

            lesson.status = target
            for name, value in values.items():
                setattr(lesson, name, value)
            await session.commit()
            return lesson

    async def mark_validated(
        self,
        lesson_id: int,
        *,
        video_type: str,
        video_url: str | None,
        locator: StreamLocator,
    ) -> Lesson:
        return await self._transition(
            lesson_id,
            LessonStatus.VALIDATED,
            video_type=video_type,
            video_url=video_url,
            resolved_stream_url=locator_url(locator),
            locator_kind=locator.kind,
            locator=locator.model_dump(mode="json", exclude={"variants"}),
            error_code=None,
            error_message=None,
            last_validated_at=_now(),
        )

    async def mark_skipped(self, lesson_id: int) -> Lesson:
        """Lesson has no video; nothing to download."""
        return await self._transition(
            lesson_id,
            LessonStatus.SKIPPED,
            video_type=None,
            error_code=None,
            error_message=None,
            last_validated_at=_now(),
        )

    async def mark_error(
        self,
        lesson_id: int,
        *,
        code: ErrorCode | str,
        message: str,
        video_type: str | None = None,
        video_url: str | None = None,
    ) -> Lesson:
        values: dict[str, object] = {
            "error_code": str(code),
            "error_message": message or str(code),
            "last_validated_at": _now(),
        }
        if video_type is not None:
            values["video_type"] = video_type
        if video_url is not None:
            values["video_url"] = video_url
        return await self._transition(lesson_id, LessonStatus.ERROR, **values)

    async def mark_downloaded(self, lesson_id: int, *, downloaded_bytes: int) -> Lesson:
        return await self._transition(
            lesson_id,
            LessonStatus.DOWNLOADED,
            downloaded_bytes=downloaded_bytes,
            error_code=None,
            error_message=None,
            last_downloaded_at=_now(),
        )

    async def increment_retry(self, lesson_id: int) -> int:
        """Bump ``retry_count`` and return the new value."""
        async with self._session_factory() as session:
            lesson = await session.get(Lesson, lesson_id)
            if lesson is None:
                msg = f"Lesson not found: {lesson_id}"
                raise LookupError(msg)
            lesson.retry_count += 1
            await session.commit()
            return lesson.retry_count

    async def reset_to_pending(self, lesson_id: int) -> Lesson:
        """Forget the resolved locator so the lesson is validated again."""
        return await self._transition(
            lesson_id,
            LessonStatus.PENDING,
            resolved_stream_url=None,
            locator_kind=None,
            locator=None,
            error_code=None,
            error_message=None,
        )

    async def requeue_validated(self, lesson_id: int) -> Lesson:
        """Send an ERROR lesson straight back to Download."""
        return await self._transition(
            lesson_id,
            LessonStatus.VALIDATED,
            error_code=None,
            error_message=None,
        )

    async def reset_errors(self) -> int:
        """Return every ERROR lesson to PENDING with a fresh retry budget."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Lesson)
                .where(Lesson.status == LessonStatus.ERROR)
                .values(
                    status=LessonStatus.PENDING,
                    retry_count=0,
                    error_code=None,
                    error_message=None,
                    resolved_stream_url=None,
                    locator_kind=None,
                    locator=None,
                )
            )
            await session.commit()
        count: int = result.rowcount or 0  # type: ignore[attr-defined]
        logger.info("lesson_errors_reset", count=count)
        return count

    async def reset_for_revalidation(self) -> int:
        """Send VALIDATED and SKIPPED lessons back to PENDING.

        Stored locators are dropped so every stream is resolved afresh.
        DOWNLOADED lessons are never touched.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Lesson)
                .where(Lesson.status.in_([LessonStatus.VALIDATED, LessonStatus.SKIPPED]))
                .values(
                    status=LessonStatus.PENDING,
                    resolved_stream_url=None,
                    locator_kind=None,
                    locator=None,
                )
            )
            await session.commit()
        count: int = result.rowcount or 0  # type: ignore[attr-defined]
        logger.info("lessons_reset_for_revalidation", count=count)
        return count
