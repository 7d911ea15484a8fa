"""Course structure and lesson content as reported by a course source."""

from enum import StrEnum

from pydantic import BaseModel, Field, HttpUrl


class VideoType(StrEnum):
    """Video platform detected on a lesson page."""

    LOOM = "loom"
    VIMEO = "vimeo"
    YOUTUBE = "youtube"
    WISTIA = "wistia"
    HLS = "hls"
    HIGHLEVEL = "highlevel"
    NATIVE = "native"
    SEGMENTS = "segments"
    UNKNOWN = "unknown"


UNSUPPORTED_VIDEO_TYPES: frozenset[VideoType] = frozenset(
    {VideoType.YOUTUBE, VideoType.WISTIA}
)


class LessonRef(BaseModel):
    """One lesson as listed by the structure discovery."""

    slug: str = Field(min_length=1)
    title: str
    url: str
    position: int = Field(ge=0)
    is_locked: bool = False


class ModuleRef(BaseModel):
    slug: str = Field(min_length=1)
    title: str
    position: int = Field(ge=0)
    is_locked: bool = False
    lessons: list[LessonRef] = Field(default_factory=list)


class DiscoveredCourse(BaseModel):
    """Full course tree returned by ``CourseSource.discover_structure``."""

    name: str
    url: str
    modules: list[ModuleRef] = Field(default_factory=list)

    @property
    def lesson_count(self) -> int:
        return sum(len(m.lessons) for m in self.modules)


class VideoReference(BaseModel):
    """Raw video reference found on a lesson page.

    ``url`` carries an embed, playlist or file URL. For platforms that
    only expose individually signed segments, ``type`` is ``segments`` and
    ``segment_urls`` holds the captured URLs in playback order.
    """

    type: VideoType
    url: str | None = None
    segment_urls: list[str] = Field(default_factory=list)

    @property
    def display_url(self) -> str | None:
        if self.url:
            return self.url
        return self.segment_urls[0] if self.segment_urls else None


class Attachment(BaseModel):
    name: str
    url: HttpUrl


class LessonContent(BaseModel):
    """Rendered lesson body plus downloadable attachments."""

    markdown: str
    attachments: list[Attachment] = Field(default_factory=list)
