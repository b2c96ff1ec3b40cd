"""Shared pytest fixtures for Ephemera tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from ephemera.db import create_engine, create_session_factory, init_db
from ephemera.engine import BlobEngine, new_entry_id
from ephemera.limits import Limits
from ephemera.storage import BlobStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'index.db'}"


@pytest.fixture
async def db_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Engine over a fresh SQLite index, disposed after the test."""
    engine = create_engine(database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def blob_store(tmp_path: Path) -> BlobStore:
    return BlobStore(tmp_path / "blobs")


MakeEngine = Callable[..., BlobEngine]


@pytest.fixture
def make_engine(
    blob_store: BlobStore,
    session_factory: async_sessionmaker[AsyncSession],
    clock: FakeClock,
) -> MakeEngine:
    """Factory fixture for BlobEngine instances sharing one store and index."""

    def _make(
        *,
        limits: Limits | None = None,
        id_factory: Callable[[], str] = new_entry_id,
    ) -> BlobEngine:
        return BlobEngine(
            blob_store,
            session_factory,
            limits=limits,
            clock=clock,
            id_factory=id_factory,
        )

    return _make


@pytest.fixture
def engine(make_engine: MakeEngine) -> BlobEngine:
    return make_engine()
