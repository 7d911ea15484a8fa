"""Shared HTTP client setup and media request headers."""

from __future__ import annotations

from urllib.parse import urlsplit

import httpx

from course_mirror.config import Settings
from course_mirror.models.locator import AuthContext


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """Async client used for playlists, reachability checks and segments."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.http_timeout),
        follow_redirects=True,
        headers={"User-Agent": settings.user_agent},
        transport=httpx.AsyncHTTPTransport(retries=2),
    )


def url_origin(url: str) -> str:
    """``scheme://host[:port]/`` of ``url``."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}/"


def request_headers(url: str, auth: AuthContext | None = None) -> dict[str, str]:
    """Origin/Referer/Cookie/Authorization headers for a media request.

    Origin and Referer come from the auth context's referer when given,
    otherwise from the media URL itself.
    """
    referer = auth.referer if auth is not None and auth.referer else None
    origin = url_origin(referer or url).rstrip("/")
    headers = {"Origin": origin, "Referer": referer or f"{origin}/"}
    if auth is not None:
        if auth.cookies is not None:
            headers["Cookie"] = auth.cookies.get_secret_value()
        if auth.bearer_token is not None:
            headers["Authorization"] = f"Bearer {auth.bearer_token.get_secret_value()}"
    return headers
