"""Tests for hosted player endpoint helpers."""

import pytest

from course_mirror.errors import ErrorCode, StreamError
from course_mirror.streams.providers import (
    extract_loom_id,
    extract_vimeo_hash,
    extract_vimeo_id,
    find_loom_playlist,
    pick_vimeo_stream,
    vimeo_config_url,
)


class TestVimeoIds:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://vimeo.com/76979871", "76979871"),
            ("https://player.vimeo.com/video/76979871?h=ab12", "76979871"),
            ("https://vimeo.com/channels/staffpicks/76979871", "76979871"),
            ("https://vimeo.com/groups/shortfilms/videos/76979871", "76979871"),
            ("https://cdn.example.com/video.m3u8", None),
        ],
    )
    def test_extract_id(self, url: str, expected: str | None) -> None:
        assert extract_vimeo_id(url) == expected

    def test_hash_from_path_or_query(self) -> None:
        assert extract_vimeo_hash("https://vimeo.com/76979871/ab12cd") == "ab12cd"
        assert extract_vimeo_hash("https://player.vimeo.com/video/1?h=ef34") == "ef34"
        assert extract_vimeo_hash("https://vimeo.com/76979871") is None

    def test_config_url(self) -> None:
        assert vimeo_config_url("1") == "https://player.vimeo.com/video/1/config"
        assert vimeo_config_url("1", "ab") == "https://player.vimeo.com/video/1/config?h=ab"


class TestPickVimeoStream:
    def test_preferred_cdn_first(self) -> None:
        config = {
            "request": {
                "files": {
                    "hls": {
                        "cdns": {
                            "other": {"url": "https://other/x.m3u8"},
                            "fastly_skyfire": {"url": "https://fastly/x.m3u8"},
                        }
                    }
                }
            }
        }
        assert pick_vimeo_stream(config) == ("https://fastly/x.m3u8", False)

    def test_unknown_cdn_as_last_resort(self) -> None:
        config = {"request": {"files": {"hls": {"cdns": {"other": {"url": "https://o/x"}}}}}}
        assert pick_vimeo_stream(config) == ("https://o/x", False)

    def test_dash_only_unsupported(self) -> None:
        with pytest.raises(StreamError) as exc_info:
            pick_vimeo_stream({"request": {"files": {"dash": {"cdns": {}}}}})
        assert exc_info.value.code == ErrorCode.UNSUPPORTED_PROVIDER

    def test_no_streams(self) -> None:
        with pytest.raises(StreamError) as exc_info:
            pick_vimeo_stream({})
        assert exc_info.value.code == ErrorCode.PARSE_ERROR


class TestLoom:
    def test_extract_id(self) -> None:
        assert extract_loom_id("https://www.loom.com/share/9f8e7d?t=3") == "9f8e7d"
        assert extract_loom_id("https://www.loom.com/embed/9f8e7d") == "9f8e7d"
        assert extract_loom_id("https://example.com/embed/9f8e7d") is None

    def test_playlist_unescaped(self) -> None:
        html = '"url":"https:\\/\\/luna.loom.com\\/id\\/1\\/playlist.m3u8?a=1\\u0026b=2"'
        assert find_loom_playlist(html) == "https://luna.loom.com/id/1/playlist.m3u8?a=1&b=2"

    def test_no_playlist(self) -> None:
        assert find_loom_playlist("<html></html>") is None
