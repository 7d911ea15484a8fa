"""Stream Locator Resolver: raw video reference -> fetchable locator.

Embed pages and player APIs often return HTML or JSON that merely names
the real playlist. The resolver follows such references for at most
``MAX_UNWRAP_DEPTH`` extra fetches and fails with ``PARSE_ERROR`` beyond
that.
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from course_mirror.errors import ErrorCode, StreamError
from course_mirror.models.locator import (
    AuthContext,
    DirectLocator,
    PlaylistLocator,
    SegmentListLocator,
    StreamLocator,
)
from course_mirror.models.structure import (
    UNSUPPORTED_VIDEO_TYPES,
    VideoReference,
    VideoType,
)
from course_mirror.streams.http import request_headers, url_origin
from course_mirror.streams.playlist import (
    is_playlist,
    parse_master_playlist,
    resolve_with_params,
)
from course_mirror.streams.providers import (
    extract_loom_id,
    extract_vimeo_hash,
    extract_vimeo_id,
    find_loom_playlist,
    loom_embed_url,
    pick_vimeo_stream,
    vimeo_config_url,
    vimeo_embed_url,
)

logger = structlog.get_logger()

MAX_UNWRAP_DEPTH = 2
DIRECT_FILE_EXTENSIONS: tuple[str, ...] = (".mp4", ".webm", ".mov")

_EMBEDDED_PLAYLIST_URL = re.compile(r"https?://[^\s\"'<>\\]+?\.m3u8[^\s\"'<>\\]*")


def is_direct_file_url(url: str) -> bool:
    return urlsplit(url).path.lower().endswith(DIRECT_FILE_EXTENSIONS)


def is_playlist_url(url: str) -> bool:
    return urlsplit(url).path.lower().endswith(".m3u8")


def find_nested_playlist_url(body: str, base_url: str) -> str | None:
    """Find a playlist URL named inside a JSON payload or plain text."""
    try:
        payload: Any = json.loads(body)
    except ValueError:
        payload = None

    if isinstance(payload, dict | list):
        stack: list[Any] = [payload]
        while stack:
            node = stack.pop()
            if isinstance(node, dict):
                stack.extend(reversed(list(node.values())))
            elif isinstance(node, list):
                stack.extend(reversed(node))
            elif isinstance(node, str) and ".m3u8" in node:
                return resolve_with_params(node.strip(), base_url)

    # Script blobs escape slashes and ampersands
    text = body.replace("\\/", "/").replace("\\u0026", "&")
    match = _EMBEDDED_PLAYLIST_URL.search(text)
    return match.group(0) if match else None


class StreamResolver:
    """Turns a ``VideoReference`` into a ``Direct``/``Playlist``/``SegmentList``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def resolve(
        self, reference: VideoReference, auth: AuthContext | None = None
    ) -> StreamLocator:
        """Resolve a reference found on a lesson page.

        Raises:
            StreamError: With ``UNSUPPORTED_PROVIDER``, ``NO_SEGMENTS``,
                ``FETCH_FAILED``, ``PARSE_ERROR`` or ``VALIDATION_FAILED``.
        """
        if reference.type in UNSUPPORTED_VIDEO_TYPES:
            msg = f"{reference.type} videos are not supported"
            raise StreamError(ErrorCode.UNSUPPORTED_PROVIDER, msg)

        if reference.type == VideoType.SEGMENTS or reference.segment_urls:
            if not reference.segment_urls:
                raise StreamError(ErrorCode.NO_SEGMENTS, "No segment URLs captured")
            return SegmentListLocator(urls=list(reference.segment_urls))

        url = reference.url
        if not url:
            raise StreamError(ErrorCode.VALIDATION_FAILED, "Video reference has no URL")

        if is_direct_file_url(url) or (
            reference.type == VideoType.NATIVE and not is_playlist_url(url)
        ):
            return DirectLocator(url=url, progressive=True)

        if reference.type == VideoType.VIMEO:
            vimeo_id = extract_vimeo_id(url)
            if vimeo_id is not None:
                return await self._resolve_vimeo(vimeo_id, url, auth)
        elif reference.type == VideoType.LOOM:
            loom_id = extract_loom_id(url)
            if loom_id is not None:
                url = await self._loom_playlist_url(loom_id)

        return await self._resolve_playlist(url, auth)

    async def _resolve_playlist(
        self, url: str, auth: AuthContext | None
    ) -> StreamLocator:
        playlist_url, body = await self.fetch_playlist(url, auth)
        try:
            variants = parse_master_playlist(body, playlist_url)
        except ValueError as exc:
            msg = f"Malformed playlist at {playlist_url}: {exc}"
            raise StreamError(ErrorCode.PARSE_ERROR, msg) from exc

        if variants:
            return PlaylistLocator(url=playlist_url, variants=variants)
        return DirectLocator(url=playlist_url)

    # ── Hosted players ──

    async def _resolve_vimeo(
        self, video_id: str, page_url: str, auth: AuthContext | None
    ) -> StreamLocator:
        """Read the stream from Vimeo's player config.

        Domain-restricted videos need the course page as referer; when that
        is refused the embed page is tried as referer once.
        """
        config_url = vimeo_config_url(video_id, extract_vimeo_hash(page_url))
        referer = auth.referer if auth is not None and auth.referer else None
        headers = {"Accept": "application/json"}
        if referer:
            headers.update(Referer=referer, Origin=url_origin(referer).rstrip("/"))
        else:
            headers["Referer"] = "https://player.vimeo.com/"

        response = await self._get(config_url, headers)
        if response.status_code == 403 and referer:
            headers.update(
                Referer=vimeo_embed_url(video_id), Origin="https://player.vimeo.com"
            )
            response = await self._get(config_url, headers)

        if response.status_code == 404:
            msg = f"Vimeo video {video_id} not found"
            raise StreamError(ErrorCode.FETCH_FAILED, msg)
        if response.status_code == 403:
            msg = f"Vimeo video {video_id} is private or domain restricted"
            raise StreamError(ErrorCode.FETCH_FAILED, msg)
        if response.status_code == 429:
            raise StreamError(ErrorCode.FETCH_FAILED, "Rate limited by Vimeo")
        if not response.is_success:
            msg = f"HTTP {response.status_code} fetching {config_url}"
            raise StreamError(ErrorCode.FETCH_FAILED, msg)

        try:
            config = response.json()
        except ValueError as exc:
            msg = f"Vimeo config for {video_id} is not JSON"
            raise StreamError(ErrorCode.PARSE_ERROR, msg) from exc
        if not isinstance(config, dict):
            msg = f"Unexpected Vimeo config for {video_id}"
            raise StreamError(ErrorCode.PARSE_ERROR, msg)

        stream_url, progressive = pick_vimeo_stream(config)
        logger.debug("vimeo_stream_found", video_id=video_id, progressive=progressive)
        if progressive:
            return DirectLocator(url=stream_url, progressive=True)
        return await self._resolve_playlist(stream_url, auth)

    async def _loom_playlist_url(self, video_id: str) -> str:
        embed_url = loom_embed_url(video_id)
        response = await self._get(embed_url, {"Referer": "https://www.loom.com/"})
        if not response.is_success:
            msg = f"HTTP {response.status_code} fetching {embed_url}"
            raise StreamError(ErrorCode.FETCH_FAILED, msg)
        playlist_url = find_loom_playlist(response.text)
        if playlist_url is None:
            msg = f"No playlist on Loom embed page for {video_id}"
            raise StreamError(ErrorCode.PARSE_ERROR, msg)
        return playlist_url

    async def _get(self, url: str, headers: dict[str, str]) -> httpx.Response:
        try:
            return await self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            msg = f"Request failed for {url}: {exc!r}"
            raise StreamError(ErrorCode.FETCH_FAILED, msg) from exc

    async def fetch_playlist(
        self, url: str, auth: AuthContext | None = None
    ) -> tuple[str, str]:
        """Fetch a playlist, unwrapping JSON/text wrappers.

        Returns:
            ``(playlist_url, body)`` of the first response that is an M3U8.
        """
        current = url
        for depth in range(MAX_UNWRAP_DEPTH + 1):
            body = await self._fetch_text(current, auth)
            if is_playlist(body):
                if depth:
                    logger.debug("playlist_unwrapped", url=url, depth=depth)
                return current, body
            if depth == MAX_UNWRAP_DEPTH:
                break
            nested = find_nested_playlist_url(body, current)
            if nested is None:
                msg = f"No playlist found in response from {current}"
                raise StreamError(ErrorCode.PARSE_ERROR, msg)
            current = nested

        msg = f"No playlist within {MAX_UNWRAP_DEPTH} levels of unwrapping from {url}"
        raise StreamError(ErrorCode.PARSE_ERROR, msg)

    async def _fetch_text(self, url: str, auth: AuthContext | None) -> str:
        try:
            response = await self._client.get(url, headers=request_headers(url, auth))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"HTTP {exc.response.status_code} fetching {url}"
            raise StreamError(ErrorCode.FETCH_FAILED, msg) from exc
        except httpx.HTTPError as exc:
            msg = f"Request failed for {url}: {exc!r}"
            raise StreamError(ErrorCode.FETCH_FAILED, msg) from exc
        return response.text
