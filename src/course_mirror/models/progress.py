"""Progress events emitted by the sync orchestrator.

Each phase has its own closed family of events discriminated on ``kind``.
"""

from collections.abc import Callable
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from course_mirror.errors import ErrorCode

# ── Scan ──


class ScanStarted(BaseModel):
    kind: Literal["scan_started"] = "scan_started"
    root_url: str


class ModuleScanned(BaseModel):
    kind: Literal["module_scanned"] = "module_scanned"
    module_title: str
    lesson_count: int
    new_lessons: int


class ScanCompleted(BaseModel):
    kind: Literal["scan_completed"] = "scan_completed"
    modules: int
    lessons: int
    new_lessons: int


ScanProgress = Annotated[
    ScanStarted | ModuleScanned | ScanCompleted, Field(discriminator="kind")
]

# ── Validate ──


class LessonValidated(BaseModel):
    kind: Literal["lesson_validated"] = "lesson_validated"
    lesson_id: int
    title: str
    status: str
    error_code: ErrorCode | None = None


class ValidateCompleted(BaseModel):
    kind: Literal["validate_completed"] = "validate_completed"
    validated: int
    skipped: int
    errors: int


ValidateProgress = Annotated[
    LessonValidated | ValidateCompleted, Field(discriminator="kind")
]

# ── Extract ──


class ContentSaved(BaseModel):
    kind: Literal["content_saved"] = "content_saved"
    lesson_id: int
    path: str


class ContentFailed(BaseModel):
    kind: Literal["content_failed"] = "content_failed"
    lesson_id: int
    message: str


class ExtractCompleted(BaseModel):
    kind: Literal["extract_completed"] = "extract_completed"
    download_tasks: int
    already_downloaded: int


ExtractProgress = Annotated[
    ContentSaved | ContentFailed | ExtractCompleted, Field(discriminator="kind")
]

# ── Download ──


class DownloadPercent(BaseModel):
    kind: Literal["download_percent"] = "download_percent"
    lesson_id: int
    percent: float = Field(ge=0, le=100)


class DownloadFinished(BaseModel):
    kind: Literal["download_finished"] = "download_finished"
    lesson_id: int
    bytes_written: int


class DownloadFailed(BaseModel):
    kind: Literal["download_failed"] = "download_failed"
    lesson_id: int
    error_code: ErrorCode
    message: str


class DownloadQueueProgress(BaseModel):
    kind: Literal["download_queue_progress"] = "download_queue_progress"
    done: int
    total: int


DownloadProgress = Annotated[
    DownloadPercent | DownloadFinished | DownloadFailed | DownloadQueueProgress,
    Field(discriminator="kind"),
]

# The phase unions share ``kind`` and merge into a single tagged union
SyncEvent = Annotated[
    ScanProgress | ValidateProgress | ExtractProgress | DownloadProgress,
    Field(discriminator="kind"),
]

EventCallback = Callable[[SyncEvent], None]
