"""External remux tool (FFmpeg): presence check, stream copy, concatenation.

All invocations copy streams without re-encoding. Output is written to a
``.part`` file next to the destination and renamed only after FFmpeg exits
cleanly, so a failed run never leaves a truncated video behind.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import structlog

from course_mirror.errors import DownloadError, ErrorCode, RemuxNotFoundError

logger = structlog.get_logger()

PercentCallback = Callable[[float], None]

_DURATION = re.compile(r"Duration:\s*(\d{2}):(\d{2}):(\d{2})\.(\d{2})")
_TIME = re.compile(r"time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})")
_STDERR_TAIL = 4000


def _to_seconds(groups: Sequence[str]) -> float:
    hours, minutes, seconds, centis = (int(g) for g in groups)
    return hours * 3600 + minutes * 60 + seconds + centis / 100


def parse_duration(output: str) -> float | None:
    """Total input duration in seconds from FFmpeg's stderr banner."""
    match = _DURATION.search(output)
    return _to_seconds(match.groups()) if match else None


def parse_time(output: str) -> float | None:
    """Latest ``time=`` position in seconds from FFmpeg's stats output."""
    matches = _TIME.findall(output)
    return _to_seconds(matches[-1]) if matches else None


def part_path(output: Path) -> Path:
    return output.with_name(output.name + ".part")


class ProgressThrottle:
    """Forward percent updates at most once per ``interval`` seconds.

    100 % is always forwarded.
    """

    def __init__(
        self,
        callback: PercentCallback,
        *,
        interval: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._last_emit: float | None = None

    def update(self, percent: float) -> None:
        percent = max(0.0, min(percent, 100.0))
        now = self._clock()
        if (
            percent >= 100
            or self._last_emit is None
            or now - self._last_emit >= self._interval
        ):
            self._last_emit = now
            self._callback(percent)


class RemuxTool:
    """Thin async wrapper around the ``ffmpeg`` binary."""

    def __init__(self, binary: str = "ffmpeg", *, timeout: float = 3600.0) -> None:
        self._binary = binary
        self._timeout = timeout
        self._available: bool | None = None

    async def ensure_available(self) -> None:
        """Check once that the binary runs; later calls reuse the answer.

        Raises:
            RemuxNotFoundError: If ``<binary> -version`` cannot be run.
        """
        if self._available is None:
            self._available = await self._runs_version()
            logger.info("remux_tool_checked", binary=self._binary, available=self._available)
        if not self._available:
            msg = f"{self._binary} not found. Install FFmpeg to download videos."
            raise RemuxNotFoundError(msg)

    async def _runs_version(self) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                self._binary,
                "-version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            return await process.wait() == 0
        except (FileNotFoundError, PermissionError):
            return False

    async def remux(
        self,
        url: str,
        output: Path,
        *,
        headers: Mapping[str, str] | None = None,
        on_progress: PercentCallback | None = None,
    ) -> float | None:
        """Copy the stream at ``url`` into an MP4 file.

        Args:
            url: Media file or HLS playlist URL.
            output: Final destination; only created on success.
            headers: HTTP headers forwarded by FFmpeg on every request.
            on_progress: Receives percent complete, throttled to ~5/s.

        Returns:
            Input duration in seconds, when FFmpeg reported it.

        Raises:
            DownloadError: ``REMUX_ERROR`` on non-zero exit or timeout.
            RemuxNotFoundError: If the binary vanished since the version check.
        """
        output.parent.mkdir(parents=True, exist_ok=True)
        tmp = part_path(output)
        args = ["-y", "-hide_banner", "-loglevel", "info", "-stats"]
        if headers:
            args += ["-headers", "".join(f"{k}: {v}\r\n" for k, v in headers.items())]
        args += [
            "-nostdin",
            "-i",
            url,
            "-c",
            "copy",
            "-bsf:a",
            "aac_adtstoasc",
            "-f",
            "mp4",
            str(tmp),
        ]

        throttle = ProgressThrottle(on_progress) if on_progress is not None else None
        try:
            duration = await self._run(args, throttle)
            tmp.replace(output)
        finally:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
        if throttle is not None:
            throttle.update(100.0)
        return duration

    async def concat(self, segments: Sequence[Path], output: Path, work_dir: Path) -> None:
        """Join ``segments`` in order with the concat demuxer (stream copy).

        Raises:
            DownloadError: ``REMUX_ERROR`` if FFmpeg fails.
        """
        list_file = work_dir / "concat.txt"
        lines = []
        for segment in segments:
            escaped = str(segment.resolve()).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        list_file.write_text("\n".join(lines) + "\n", encoding="utf-8")

        output.parent.mkdir(parents=True, exist_ok=True)
        tmp = part_path(output)
        args = [
            "-y",
            "-hide_banner",
            "-nostdin",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(list_file),
            "-c",
            "copy",
            "-f",
            "mp4",
            str(tmp),
        ]
        try:
            await self._run(args, None)
            tmp.replace(output)
        finally:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)

    async def _run(self, args: list[str], throttle: ProgressThrottle | None) -> float | None:
        try:
            process = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            self._available = False
            msg = f"{self._binary} not found. Install FFmpeg to download videos."
            raise RemuxNotFoundError(msg) from None

        stderr = process.stderr
        tail = ""
        duration: float | None = None
        try:
            if stderr is None:
                msg = f"{self._binary} started without a stderr pipe"
                raise DownloadError(ErrorCode.REMUX_ERROR, msg)
            async with asyncio.timeout(self._timeout):
                while chunk := await stderr.read(4096):
                    tail = (tail + chunk.decode("utf-8", errors="replace"))[
                        -_STDERR_TAIL:
                    ]
                    if duration is None:
                        duration = parse_duration(tail)
                    if throttle is not None and duration:
                        position = parse_time(tail)
                        if position is not None:
                            throttle.update(position / duration * 100)
                returncode = await process.wait()
        except TimeoutError:
            msg = f"FFmpeg timed out after {self._timeout:.0f}s"
            raise DownloadError(ErrorCode.REMUX_ERROR, msg) from None
        finally:
            # Timed out or cancelled: never leave FFmpeg running
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        if returncode != 0:
            msg = f"FFmpeg failed (code {returncode}): {tail.strip()[-500:]}"
            raise DownloadError(ErrorCode.REMUX_ERROR, msg)
        return duration
