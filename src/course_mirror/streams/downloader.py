"""Adaptive Download Engine: one resolved locator -> one local video file.

Branches on the locator variant:

- ``DirectLocator(progressive=True)``: plain HTTP file download.
- ``DirectLocator`` / ``PlaylistLocator``: reachability check, then an
  FFmpeg stream copy (after picking a rendition for playlists).
- ``SegmentListLocator``: fetch each signed segment to disk, skipping the
  ones already present, then concatenate.
"""

from __future__ import annotations

import contextlib
import shutil
from pathlib import Path

import anyio
import httpx
import structlog

from course_mirror.cancellation import CancellationToken
from course_mirror.errors import (
    DownloadError,
    DownloadInterrupted,
    ErrorCode,
    StreamError,
)
from course_mirror.models.locator import (
    AuthContext,
    DirectLocator,
    DownloadResult,
    DownloadTask,
    PlaylistLocator,
    SegmentListLocator,
)
from course_mirror.streams.http import request_headers
from course_mirror.streams.playlist import parse_master_playlist, select_for_quality
from course_mirror.streams.remux import PercentCallback, RemuxTool
from course_mirror.streams.resolver import StreamResolver

logger = structlog.get_logger()


def segment_dir(destination: Path) -> Path:
    """Working directory for segment downloads of ``destination``.

    The name is deterministic so an interrupted download resumes into the
    same directory.
    """
    return destination.parent / f".segments-{destination.stem}"


def segment_path(work_dir: Path, index: int) -> Path:
    return work_dir / f"segment{index:05d}.ts"


class AdaptiveDownloader:
    """Downloads ``DownloadTask`` objects into their destination paths."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        remux: RemuxTool,
        resolver: StreamResolver,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._client = client
        self._remux = remux
        self._resolver = resolver
        self._cancel = cancel

    async def ensure_ready(self) -> None:
        """Fail fast with ``RemuxNotFoundError`` when FFmpeg is missing."""
        await self._remux.ensure_available()

    async def download(
        self,
        task: DownloadTask,
        on_progress: PercentCallback | None = None,
    ) -> DownloadResult:
        """Download one task.

        Raises:
            DownloadError: ``FETCH_FAILED``, ``SEGMENT_FETCH_FAILED``,
                ``REMUX_ERROR`` or ``DOWNLOAD_FAILED``.
            DownloadInterrupted: If the run was cancelled between segments.
            RemuxNotFoundError: If FFmpeg is not installed.
        """
        dest = task.destination
        if dest.is_file() and dest.stat().st_size > 0:
            return DownloadResult(
                path=dest, bytes_written=dest.stat().st_size, already_present=True
            )

        await self._remux.ensure_available()
        log = logger.bind(lesson_id=task.lesson_id, kind=task.locator.kind)
        log.info("video_download_start", destination=str(dest))

        locator = task.locator
        duration: float | None = None
        if isinstance(locator, SegmentListLocator):
            await self._download_segments(locator, dest, task.auth, on_progress)
        elif isinstance(locator, DirectLocator) and locator.progressive:
            await self._download_progressive(locator.url, dest, task.auth, on_progress)
        elif isinstance(locator, PlaylistLocator):
            url = await self._pick_rendition(locator, task)
            duration = await self._remux_url(url, dest, task.auth, on_progress)
        else:
            duration = await self._remux_url(locator.url, dest, task.auth, on_progress)

        size = dest.stat().st_size
        log.info("video_download_done", bytes=size, duration_sec=duration)
        return DownloadResult(path=dest, bytes_written=size, duration_sec=duration)

    # ── Remux path ──

    async def _pick_rendition(self, locator: PlaylistLocator, task: DownloadTask) -> str:
        variants = locator.variants
        if not variants:
            try:
                playlist_url, body = await self._resolver.fetch_playlist(
                    locator.url, task.auth
                )
                variants = parse_master_playlist(body, playlist_url)
            except (StreamError, ValueError) as exc:
                # Download the master as-is and let FFmpeg pick a stream
                logger.warning(
                    "playlist_variants_unavailable", url=locator.url, error=str(exc)
                )
                return locator.url
        chosen = select_for_quality(variants, task.quality)
        if chosen is None:
            return locator.url
        logger.debug("playlist_variant_selected", label=chosen.label, quality=task.quality)
        return chosen.url

    async def _check_reachable(self, url: str, headers: dict[str, str]) -> None:
        try:
            response = await self._client.head(url, headers=headers)
        except httpx.HTTPError as exc:
            msg = f"Request failed for {url}: {exc!r}"
            raise DownloadError(ErrorCode.FETCH_FAILED, msg) from exc
        if not response.is_success:
            msg = f"HTTP {response.status_code} checking {url}"
            raise DownloadError(ErrorCode.FETCH_FAILED, msg)

    async def _remux_url(
        self,
        url: str,
        dest: Path,
        auth: AuthContext | None,
        on_progress: PercentCallback | None,
    ) -> float | None:
        headers = request_headers(url, auth)
        await self._check_reachable(url, headers)
        return await self._remux.remux(url, dest, headers=headers, on_progress=on_progress)

    # ── Progressive path ──

    async def _download_progressive(
        self,
        url: str,
        dest: Path,
        auth: AuthContext | None,
        on_progress: PercentCallback | None,
    ) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".tmp")
        try:
            async with self._client.stream(
                "GET", url, headers=request_headers(url, auth)
            ) as response:
                if not response.is_success:
                    msg = f"HTTP {response.status_code} downloading {url}"
                    raise DownloadError(ErrorCode.DOWNLOAD_FAILED, msg)
                total = int(response.headers.get("content-length") or 0)
                received = 0
                async with await anyio.Path(tmp).open("wb") as fh:
                    async for chunk in response.aiter_bytes():
                        await fh.write(chunk)
                        received += len(chunk)
                        if on_progress is not None and total:
                            on_progress(min(received / total * 100, 100.0))
            await anyio.Path(tmp).rename(dest)
        except httpx.HTTPError as exc:
            msg = f"Download failed for {url}: {exc!r}"
            raise DownloadError(ErrorCode.DOWNLOAD_FAILED, msg) from exc
        finally:
            with contextlib.suppress(OSError):
                await anyio.Path(tmp).unlink(missing_ok=True)
        if on_progress is not None:
            on_progress(100.0)

    # ── Segment-list path ──

    async def _download_segments(
        self,
        locator: SegmentListLocator,
        dest: Path,
        auth: AuthContext | None,
        on_progress: PercentCallback | None,
    ) -> None:
        work_dir = segment_dir(dest)
        work_dir.mkdir(parents=True, exist_ok=True)
        total = len(locator.urls)
        paths: list[Path] = []
        reused = 0

        for index, url in enumerate(locator.urls):
            if self._cancel is not None and not self._cancel.should_continue():
                msg = f"Interrupted after {index}/{total} segments"
                raise DownloadInterrupted(msg)

            path = segment_path(work_dir, index)
            if path.is_file() and path.stat().st_size > 0:
                reused += 1
            else:
                await self._fetch_segment(url, path, auth, index, total)
            paths.append(path)
            if on_progress is not None:
                # Concatenation is the last few percent
                on_progress((index + 1) / total * 95)

        logger.debug("segments_ready", total=total, reused=reused)
        try:
            await self._remux.concat(paths, dest, work_dir)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
        if on_progress is not None:
            on_progress(100.0)

    async def _fetch_segment(
        self,
        url: str,
        path: Path,
        auth: AuthContext | None,
        index: int,
        total: int,
    ) -> None:
        try:
            response = await self._client.get(url, headers=request_headers(url, auth))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"Segment {index + 1}/{total}: HTTP {exc.response.status_code}"
            raise DownloadError(ErrorCode.SEGMENT_FETCH_FAILED, msg) from exc
        except httpx.HTTPError as exc:
            msg = f"Segment {index + 1}/{total}: {exc!r}"
            raise DownloadError(ErrorCode.SEGMENT_FETCH_FAILED, msg) from exc

        part = anyio.Path(path.with_name(path.name + ".part"))
        await part.write_bytes(response.content)
        await part.rename(path)
