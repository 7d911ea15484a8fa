"""Resolved stream locators and download task schemas.

A locator is a closed tagged union discriminated on ``kind``; the download
engine branches on the variant instead of inspecting URL strings.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr

from course_mirror.config import VideoQuality
from course_mirror.models.structure import VideoType


class Variant(BaseModel):
    """One quality rendition listed in a master playlist."""

    label: str
    url: str
    bandwidth: int = Field(ge=0)
    width: int | None = None
    height: int | None = None


class DirectLocator(BaseModel):
    """Fetchable media file or media playlist.

    ``progressive`` marks a plain file (mp4/webm/mov) that is streamed over
    HTTP instead of being remuxed.
    """

    kind: Literal["direct"] = "direct"
    url: str
    progressive: bool = False


class PlaylistLocator(BaseModel):
    """Adaptive master playlist; a variant is chosen at download time."""

    kind: Literal["playlist"] = "playlist"
    url: str
    variants: list[Variant] = Field(default_factory=list)


class SegmentListLocator(BaseModel):
    """Ordered, individually authorized segment URLs."""

    kind: Literal["segment_list"] = "segment_list"
    urls: list[str] = Field(min_length=1)


StreamLocator = Annotated[
    DirectLocator | PlaylistLocator | SegmentListLocator,
    Field(discriminator="kind"),
]


def locator_url(locator: DirectLocator | PlaylistLocator | SegmentListLocator) -> str:
    """Primary URL of a locator, used for persistence and reporting."""
    if isinstance(locator, SegmentListLocator):
        return locator.urls[0]
    return locator.url


class AuthContext(BaseModel):
    """Credentials forwarded with media requests."""

    cookies: SecretStr | None = None
    referer: str | None = None
    bearer_token: SecretStr | None = None


class DownloadTask(BaseModel):
    """Ephemeral unit of Download work built during Extract."""

    lesson_id: int
    lesson_name: str
    locator: StreamLocator
    video_type: VideoType
    video_url: str | None = None
    destination: Path
    quality: VideoQuality | None = None
    auth: AuthContext | None = None


@dataclass(frozen=True, slots=True)
class DownloadResult:
    path: Path
    bytes_written: int
    duration_sec: float | None = None
    already_present: bool = False
