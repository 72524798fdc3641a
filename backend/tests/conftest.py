"""
Shared fixtures: temporary SQLite stores with all tables created.
"""

import pytest

from attendance_sync.core.database import Base, build_engine, build_session_factory
import attendance_sync.models  # noqa: F401


@pytest.fixture
async def make_store(tmp_path):
    """Factory creating independent SQLite stores with all tables."""
    engines = []

    async def factory(name: str = "test"):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/{name}.db")
        engines.append(engine)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return build_session_factory(engine)

    yield factory

    for engine in engines:
        await engine.dispose()


@pytest.fixture
async def session_factory(make_store):
    return await make_store("test")
