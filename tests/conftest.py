"""Pytest configuration and fixtures."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from chatrelay.database.session import Base
from chatrelay.services.abuse_gate import AbuseGate
from chatrelay.services.kv_store import MemoryKeyValueStore

WINDOW_MS = 60_000
THRESHOLD = 5


@pytest.fixture
def store():
    """Fresh in-memory keyed store."""
    return MemoryKeyValueStore()


@pytest.fixture
def gate(store):
    """Gate with the standard deployment profile (Δ = 60 s, threshold 5)."""
    return AbuseGate(store, window_ms=WINDOW_MS, threshold=THRESHOLD)


@pytest_asyncio.fixture
async def session_maker():
    """In-memory SQLite database with all tables created."""
    from chatrelay.database import models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()
