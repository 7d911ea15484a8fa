"""Structured logging for course-mirror.

Logs go to stderr so that ``course-mirror status`` and the sync report can
be piped from stdout. ``production`` renders one JSON object per line,
anything else a console renderer (colored only on a terminal).

Two processors keep credentials out of the log: values of sensitive keys
are replaced outright, and query strings of logged URLs are masked, since
CDN segment and playlist URLs carry signed tokens there.
"""

import logging
import sys
from urllib.parse import urlsplit, urlunsplit

import structlog

REDACTED = "***REDACTED***"

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {"authorization", "bearer_token", "cookie", "cookies", "password", "token"}
)

# Keys whose values are URLs that may embed signed query parameters.
URL_KEYS: frozenset[str] = frozenset(
    {"url", "root_url", "video_url", "stream_url", "playlist_url", "segment_url"}
)

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def mask_query(url: str) -> str:
    """Keep scheme, host and path; replace a non-empty query with ``***``."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "***", ""))


def _redact_sensitive_keys(
    logger: logging.Logger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key, value in event_dict.items():
        lowered = key.lower()
        if lowered in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif lowered in URL_KEYS and isinstance(value, str):
            event_dict[key] = mask_query(value)
    return event_dict


def _renderer(environment: str) -> structlog.types.Processor:
    if environment == "production":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(
    environment: str = "development",
    log_level: str = "INFO",
) -> None:
    """Route structlog through the stdlib root logger on stderr.

    Args:
        environment: ``production`` for JSON lines, anything else for the
            console renderer.
        log_level: Root level name (DEBUG, INFO, WARNING, ...).
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            _redact_sensitive_keys,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(environment),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
