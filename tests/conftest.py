"""Shared fixtures: file-backed SQLite database and alarm service."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from contract_alarms.alarms.service import AlarmService
from contract_alarms.storage.database import create_engine, create_session_factory, init_models

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


@pytest.fixture
async def db_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Create a fresh SQLite database with the full schema."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'alarms.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return create_session_factory(db_engine)


@pytest.fixture
def service(session_factory: async_sessionmaker[AsyncSession]) -> AlarmService:
    """Alarm service backed by the test database."""
    return AlarmService(session_factory)
