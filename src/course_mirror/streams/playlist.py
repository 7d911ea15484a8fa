"""HLS playlist parsing and quality selection."""

from __future__ import annotations

import re
from collections.abc import Sequence
from urllib.parse import urljoin, urlsplit, urlunsplit

import m3u8

from course_mirror.config import VideoQuality
from course_mirror.models.locator import Variant

_QUALITY_HEIGHT = re.compile(r"(\d+)p?", re.IGNORECASE)


def is_playlist(body: str) -> bool:
    """True when ``body`` is an M3U8 playlist."""
    return body.lstrip("\ufeff \t\r\n").startswith("#EXTM3U")


def resolve_with_params(uri: str, base_url: str) -> str:
    """Resolve ``uri`` against ``base_url`` keeping the base's query string.

    Signed CDNs put the access token on the master playlist URL only; the
    relative variant and segment URIs need the same query to be fetchable.
    URIs that are absolute or already carry a query are left as they are.
    """
    if urlsplit(uri).scheme:
        return uri
    resolved = urljoin(base_url, uri)
    base_query = urlsplit(base_url).query
    parts = urlsplit(resolved)
    if base_query and not parts.query:
        resolved = urlunsplit(parts._replace(query=base_query))
    return resolved


def parse_master_playlist(body: str, base_url: str) -> list[Variant]:
    """Parse variant streams, highest bandwidth first.

    Returns an empty list for media playlists (no ``#EXT-X-STREAM-INF``).
    """
    playlist = m3u8.loads(body)
    if not playlist.is_variant:
        return []

    variants: list[Variant] = []
    for entry in playlist.playlists:
        info = entry.stream_info
        bandwidth = int(info.bandwidth or info.average_bandwidth or 0)
        width, height = info.resolution if info.resolution else (None, None)
        label = f"{height}p" if height else f"{round(bandwidth / 1000)}k"
        variants.append(
            Variant(
                label=label,
                url=resolve_with_params(entry.uri, base_url),
                bandwidth=bandwidth,
                width=width,
                height=height,
            )
        )
    variants.sort(key=lambda v: v.bandwidth, reverse=True)
    return variants


def parse_quality(quality: VideoQuality | str | None) -> int | None:
    """Preferred height for a quality hint like ``720p``; ``None`` if absent."""
    if quality is None:
        return None
    match = _QUALITY_HEIGHT.search(str(quality))
    return int(match.group(1)) if match else None


def select_variant(
    variants: Sequence[Variant], preferred_height: int | None = None
) -> Variant | None:
    """Pick a rendition from variants sorted by bandwidth (descending).

    Exact height match first, then the best variant not taller than the
    preferred height, then the best variant overall.
    """
    if not variants:
        return None
    if preferred_height is not None:
        for variant in variants:
            if variant.height == preferred_height:
                return variant
        for variant in variants:
            if variant.height is not None and variant.height <= preferred_height:
                return variant
    return variants[0]


def select_for_quality(
    variants: Sequence[Variant], quality: VideoQuality | str | None
) -> Variant | None:
    if not variants:
        return None
    if quality is None or quality == VideoQuality.HIGHEST:
        return variants[0]
    if quality == VideoQuality.LOWEST:
        return variants[-1]
    return select_variant(variants, parse_quality(quality))
