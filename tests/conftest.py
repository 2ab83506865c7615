import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.pool import NullPool

from orchestrator.db.session import Base, build_engine, build_sessionmaker
from tests.integration.seed import RecordingNotifier


@pytest.fixture
def session_factory(tmp_path) -> async_sessionmaker:
    # One file per test; NullPool so every session opens its own connection
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}", poolclass=NullPool)

    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create())
    yield build_sessionmaker(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
