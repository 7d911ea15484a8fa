"""Per-course SQLite database: location, engine and schema setup.

Every mirrored course gets its own database file under the state
directory, keyed by a slug derived from the course root URL. The file is
a local cache, so the schema is created directly from the ORM metadata.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from course_mirror.storage.orm import Base

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")
_UNSAFE_FILENAME = re.compile(r"[^a-zA-Z0-9-]")


def course_slug_from_url(root_url: str) -> str:
    """Derive a stable course slug from its root URL.

    ``https://www.school.com/my-course/classroom?x=1`` becomes
    ``school-com-my-course-classroom``. Query and fragment are ignored so
    the same course always maps to the same state file.
    """
    parts = urlsplit(root_url.strip())
    host = (parts.hostname or "").removeprefix("www.")
    raw = f"{host}/{parts.path}".lower()
    slug = _SLUG_SEPARATORS.sub("-", raw).strip("-")
    if not slug:
        msg = f"Cannot derive a course slug from URL: {root_url!r}"
        raise ValueError(msg)
    return slug[:150]


def state_db_path(state_dir: Path, course_slug: str) -> Path:
    """Path of the state database for ``course_slug``."""
    safe = _UNSAFE_FILENAME.sub("_", course_slug)
    return state_dir / f"{safe}.db"


def _enable_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def create_state_engine(db_path: Path) -> AsyncEngine:
    """Create an async engine for a course database file."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        # Concurrent workers write through separate connections.
        connect_args={"timeout": 30},
    )
    event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
