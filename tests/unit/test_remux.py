"""Tests for the FFmpeg remux wrapper."""

import asyncio
import shutil
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from course_mirror.errors import DownloadError, ErrorCode, RemuxNotFoundError
from course_mirror.streams.remux import (
    ProgressThrottle,
    RemuxTool,
    parse_duration,
    parse_time,
    part_path,
)

_EXEC = "course_mirror.streams.remux.asyncio.create_subprocess_exec"


class _FakeStderr:
    def __init__(self, chunks: list[bytes], *, hang: bool = False) -> None:
        self._chunks = list(chunks)
        self._hang = hang

    async def read(self, n: int = -1) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        if self._hang:
            await asyncio.sleep(10)
        return b""


class _FakeProcess:
    def __init__(
        self, returncode: int, chunks: list[bytes] | None = None, *, hang: bool = False
    ) -> None:
        self.stderr = _FakeStderr(chunks or [], hang=hang)
        self.returncode: int | None = None
        self._exit_code = returncode
        self.killed = False

    async def wait(self) -> int:
        self.returncode = -9 if self.killed else self._exit_code
        return self.returncode

    def kill(self) -> None:
        self.killed = True


def _make_exec(
    process: _FakeProcess, calls: list[tuple[Any, ...]], *, write_output: bool = True
) -> Any:
    """Fake create_subprocess_exec that writes the last argument like FFmpeg."""

    async def fake_exec(*args: Any, **kwargs: Any) -> _FakeProcess:
        calls.append(args)
        if write_output:
            Path(args[-1]).write_bytes(b"mp4-data")
        return process

    return fake_exec


class TestParsing:
    def test_parse_duration(self) -> None:
        banner = "Input #0, hls\n  Duration: 01:02:03.50, start: 0.000000"
        assert parse_duration(banner) == 3723.5

    def test_parse_duration_missing(self) -> None:
        assert parse_duration("Duration: N/A") is None

    def test_parse_time_takes_latest(self) -> None:
        stats = "time=00:00:01.00 bitrate\rtime=00:00:04.25 bitrate"
        assert parse_time(stats) == 4.25

    def test_part_path(self) -> None:
        assert part_path(Path("/x/video.mp4")) == Path("/x/video.mp4.part")


class TestProgressThrottle:
    def test_throttles_by_interval(self) -> None:
        now = [0.0]
        seen: list[float] = []
        throttle = ProgressThrottle(seen.append, interval=0.2, clock=lambda: now[0])

        throttle.update(10)
        now[0] = 0.1
        throttle.update(20)
        now[0] = 0.25
        throttle.update(30)

        assert seen == [10, 30]

    def test_hundred_always_forwarded(self) -> None:
        seen: list[float] = []
        throttle = ProgressThrottle(seen.append, clock=lambda: 0.0)
        throttle.update(50)
        throttle.update(100)
        assert seen == [50, 100]

    def test_clamped(self) -> None:
        seen: list[float] = []
        throttle = ProgressThrottle(seen.append, clock=lambda: 0.0)
        throttle.update(150)
        assert seen == [100]


class TestEnsureAvailable:
    async def test_version_check_cached(self) -> None:
        calls: list[tuple[Any, ...]] = []
        tool = RemuxTool("ffmpeg")
        with patch(_EXEC, side_effect=_make_exec(_FakeProcess(0), calls, write_output=False)):
            await tool.ensure_available()
            await tool.ensure_available()
        assert calls == [("ffmpeg", "-version")]

    async def test_missing_binary(self) -> None:
        tool = RemuxTool("no-such-ffmpeg")
        with (
            patch(_EXEC, side_effect=FileNotFoundError("no-such-ffmpeg")),
            pytest.raises(RemuxNotFoundError, match="no-such-ffmpeg not found"),
        ):
            await tool.ensure_available()

    async def test_version_check_fails(self) -> None:
        tool = RemuxTool()
        with (
            patch(_EXEC, side_effect=_make_exec(_FakeProcess(1), [], write_output=False)),
            pytest.raises(RemuxNotFoundError),
        ):
            await tool.ensure_available()


class TestRemux:
    async def test_success_renames_part(self, tmp_path: Path) -> None:
        output = tmp_path / "lesson" / "video.mp4"
        process = _FakeProcess(
            0,
            [
                b"  Duration: 00:00:10.00, start: 0.0\n",
                b"frame=10 time=00:00:05.00 bitrate=1k\r",
            ],
        )
        calls: list[tuple[Any, ...]] = []
        progress: list[float] = []

        with patch(_EXEC, side_effect=_make_exec(process, calls)):
            duration = await RemuxTool().remux(
                "https://cdn.example.com/v.m3u8",
                output,
                headers={"Referer": "https://school.example.com/"},
                on_progress=progress.append,
            )

        assert duration == 10.0
        assert output.read_bytes() == b"mp4-data"
        assert not part_path(output).exists()
        assert progress == [50.0, 100.0]

        args = calls[0]
        assert args[0] == "ffmpeg"
        assert args[args.index("-headers") + 1] == "Referer: https://school.example.com/\r\n"
        assert args[args.index("-c") + 1] == "copy"
        assert args[-1] == str(part_path(output))

    async def test_failure_leaves_nothing(self, tmp_path: Path) -> None:
        output = tmp_path / "video.mp4"
        process = _FakeProcess(1, [b"Server returned 403 Forbidden\n"])

        with (
            patch(_EXEC, side_effect=_make_exec(process, [])),
            pytest.raises(DownloadError) as exc_info,
        ):
            await RemuxTool().remux("https://cdn.example.com/v.m3u8", output)

        assert exc_info.value.code == ErrorCode.REMUX_ERROR
        assert "403" in exc_info.value.message
        assert not output.exists()
        assert not part_path(output).exists()

    async def test_timeout_kills_process(self, tmp_path: Path) -> None:
        output = tmp_path / "video.mp4"
        process = _FakeProcess(0, hang=True)

        with (
            patch(_EXEC, side_effect=_make_exec(process, [])),
            pytest.raises(DownloadError, match="timed out"),
        ):
            await RemuxTool(timeout=0.05).remux("https://cdn.example.com/v.m3u8", output)

        assert process.killed is True
        assert not output.exists()

    async def test_missing_stderr_pipe(self, tmp_path: Path) -> None:
        output = tmp_path / "video.mp4"
        process = _FakeProcess(0)
        process.stderr = None  # type: ignore[assignment]

        with (
            patch(_EXEC, side_effect=_make_exec(process, [])),
            pytest.raises(DownloadError, match="without a stderr pipe") as exc_info,
        ):
            await RemuxTool().remux("https://cdn.example.com/v.m3u8", output)

        assert exc_info.value.code == ErrorCode.REMUX_ERROR
        assert process.killed is True
        assert not output.exists()

    async def test_binary_vanished(self, tmp_path: Path) -> None:
        with (
            patch(_EXEC, side_effect=FileNotFoundError("ffmpeg")),
            pytest.raises(RemuxNotFoundError),
        ):
            await RemuxTool().remux("https://cdn.example.com/v.m3u8", tmp_path / "v.mp4")


class TestConcat:
    async def test_writes_ordered_list(self, tmp_path: Path) -> None:
        work_dir = tmp_path / ".segments-video"
        work_dir.mkdir()
        segments = [work_dir / f"segment{i:05d}.ts" for i in range(3)]
        output = tmp_path / "video.mp4"
        calls: list[tuple[Any, ...]] = []

        with patch(_EXEC, side_effect=_make_exec(_FakeProcess(0), calls)):
            await RemuxTool().concat(segments, output, work_dir)

        listing = (work_dir / "concat.txt").read_text().splitlines()
        assert listing == [f"file '{s.resolve()}'" for s in segments]
        assert output.exists()
        assert "concat" in calls[0]

    async def test_quotes_escaped(self, tmp_path: Path) -> None:
        work_dir = tmp_path / "it's"
        work_dir.mkdir()
        with patch(_EXEC, side_effect=_make_exec(_FakeProcess(0), [])):
            await RemuxTool().concat([work_dir / "a.ts"], tmp_path / "v.mp4", work_dir)
        assert "it'\\''s" in (work_dir / "concat.txt").read_text()


@pytest.mark.requires_ffmpeg
class TestRealFFmpeg:
    async def test_concat_generated_segments(self, tmp_path: Path) -> None:
        """Two generated MPEG-TS segments are joined into one MP4."""
        binary = shutil.which("ffmpeg")
        assert binary is not None
        segments = []
        for i in range(2):
            segment = tmp_path / f"segment{i:05d}.ts"
            process = await asyncio.create_subprocess_exec(
                binary, "-y", "-loglevel", "error",
                "-f", "lavfi", "-i", "testsrc=duration=1:size=160x120:rate=10",
                "-c:v", "mpeg4", "-f", "mpegts", str(segment),
            )  # fmt: skip
            assert await process.wait() == 0
            segments.append(segment)

        output = tmp_path / "video.mp4"
        await RemuxTool(binary).concat(segments, output, tmp_path)

        assert output.stat().st_size > 0
        assert not part_path(output).exists()
