"""Diagnostic JSON log written after a Download phase with failures."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field


class FailureRecord(BaseModel):
    lesson_name: str
    video_url: str | None
    video_type: str | None
    error: str
    error_code: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class FailureLog(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_attempts: int
    successful: int
    failed: int
    concurrency: int
    retry_attempts: int
    failures: list[FailureRecord] = Field(default_factory=list)


def write_failure_log(directory: Path, log: FailureLog) -> Path:
    """Write ``log`` as ``download-errors-<timestamp>.json`` in ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    stamp = log.timestamp.strftime("%Y-%m-%dT%H-%M-%S-%f")
    path = directory / f"download-errors-{stamp}.json"
    path.write_text(log.model_dump_json(indent=2), encoding="utf-8")
    return path
