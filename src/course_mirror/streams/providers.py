"""Provider-specific endpoints for hosted players (Vimeo, Loom).

A lesson page usually only exposes the public player URL. The real stream
lives behind the provider's player config (Vimeo) or embed page (Loom);
these helpers derive those endpoints and pick the stream out of them.
"""

from __future__ import annotations

import re
from typing import Any

from course_mirror.errors import ErrorCode, StreamError

_VIMEO_ID_PATTERNS = (
    re.compile(r"player\.vimeo\.com/video/(\d+)"),
    re.compile(r"vimeo\.com/channels/[^/]+/(\d+)"),
    re.compile(r"vimeo\.com/groups/[^/]+/videos/(\d+)"),
    re.compile(r"vimeo\.com/(?:video/)?(\d+)"),
)
_VIMEO_HASH_IN_PATH = re.compile(r"vimeo\.com/\d+/([a-f0-9]+)")
_VIMEO_HASH_IN_QUERY = re.compile(r"[?&]h=([a-f0-9]+)")

# Preferred Vimeo HLS CDNs, best first; any other CDN is the last resort.
VIMEO_CDN_PREFERENCE: tuple[str, ...] = (
    "akfire_interconnect_quic",
    "akamai_live",
    "fastly_skyfire",
    "fastly",
)

_LOOM_ID = re.compile(r"loom\.com/(?:embed|share)/([a-f0-9]+)")
_LOOM_PLAYLIST = re.compile(
    r'"url"\s*:\s*"(https:(?:\\/|/){2}luna\.loom\.com[^"]+?playlist\.m3u8[^"]*)"'
)


def extract_vimeo_id(url: str) -> str | None:
    for pattern in _VIMEO_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def extract_vimeo_hash(url: str) -> str | None:
    """Hash that unlisted videos need, from ``/<id>/<hash>`` or ``?h=``."""
    match = _VIMEO_HASH_IN_PATH.search(url) or _VIMEO_HASH_IN_QUERY.search(url)
    return match.group(1) if match else None


def vimeo_config_url(video_id: str, unlisted_hash: str | None = None) -> str:
    url = f"https://player.vimeo.com/video/{video_id}/config"
    if unlisted_hash:
        url += f"?h={unlisted_hash}"
    return url


def vimeo_embed_url(video_id: str) -> str:
    return f"https://player.vimeo.com/video/{video_id}"


def pick_vimeo_stream(config: dict[str, Any]) -> tuple[str, bool]:
    """Choose a stream from a Vimeo player config.

    Returns:
        ``(url, progressive)``: an HLS master from the preferred CDN, or
        the tallest progressive MP4 when there is no HLS.

    Raises:
        StreamError: ``UNSUPPORTED_PROVIDER`` for DRM-only videos,
            ``PARSE_ERROR`` when the config lists no usable stream.
    """
    request = config.get("request") or {}
    files = request.get("files") or {}

    cdns = (files.get("hls") or {}).get("cdns") or {}
    for name in (*VIMEO_CDN_PREFERENCE, *cdns):
        url = (cdns.get(name) or {}).get("url")
        if url:
            return url, False

    progressive = [item for item in files.get("progressive") or [] if item.get("url")]
    if progressive:
        best = max(progressive, key=lambda item: item.get("height") or 0)
        return best["url"], True

    if files.get("dash"):
        msg = "Vimeo video is DRM protected (DASH only)"
        raise StreamError(ErrorCode.UNSUPPORTED_PROVIDER, msg)
    raise StreamError(ErrorCode.PARSE_ERROR, "No HLS or progressive stream in Vimeo config")


def extract_loom_id(url: str) -> str | None:
    match = _LOOM_ID.search(url)
    return match.group(1) if match else None


def loom_embed_url(video_id: str) -> str:
    return f"https://www.loom.com/embed/{video_id}"


def find_loom_playlist(html: str) -> str | None:
    """HLS master URL embedded in a Loom embed page."""
    match = _LOOM_PLAYLIST.search(html)
    if match is None:
        return None
    return match.group(1).replace("\\u0026", "&").replace("\\/", "/")
