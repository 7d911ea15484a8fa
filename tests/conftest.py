"""Shared pytest fixtures."""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from course_mirror.storage.database import (
    create_session_factory,
    create_state_engine,
    init_schema,
)
from course_mirror.storage.lesson_repository import LessonStateStore


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-ffmpeg",
        action="store_true",
        default=False,
        help="Run tests that invoke a real ffmpeg binary",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if config.getoption("--run-ffmpeg"):
        return
    skip = pytest.mark.skip(reason="needs --run-ffmpeg flag")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip)


@pytest.fixture()
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Fresh per-test SQLite state database."""
    engine = create_state_engine(tmp_path / "state" / "course.db")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def store(engine: AsyncEngine) -> LessonStateStore:
    return LessonStateStore(create_session_factory(engine))
