"""
Global test configuration and fixtures.
"""

import random
import shutil
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from markovbot.core.chain import ChainEngine
from markovbot.core.model_store import ModelStore
from markovbot.core.persistence import DatabaseManager
from markovbot.integrations.matrix.session import RoomMembership

BOT_ID = "@markovbot:example.org"
ROOM_ID = "!room1:example.org"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def rng() -> random.Random:
    """Seeded random source so walks and draws are reproducible."""
    return random.Random(1234)


@pytest.fixture
def engine(rng) -> ChainEngine:
    return ChainEngine(order=1, max_tokens=20, rng=rng)


@pytest_asyncio.fixture
async def model_store(tmp_path, engine) -> AsyncGenerator[ModelStore, None]:
    """A loaded ModelStore over a fresh SQLite file."""
    store = ModelStore(DatabaseManager(str(tmp_path / "corpus.db")), engine, snapshot_interval=0)
    await store.load()
    try:
        yield store
    finally:
        await store.close()


@pytest.fixture
def mock_session() -> MagicMock:
    """Provide a mocked Matrix session with one configured room."""
    session = MagicMock()
    session.own_id = BOT_ID
    membership = RoomMembership(
        room="#room1:example.org",
        nick="ash",
        scopes=["#room1:example.org", "global"],
        room_id=ROOM_ID,
        joined=True,
    )
    session.rooms = [membership]
    session.membership_for.side_effect = (
        lambda room_id: membership if room_id in (ROOM_ID, membership.room) else None
    )
    session.send = AsyncMock(return_value=True)
    return session


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests - fast, isolated tests"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests - test component interactions"
    )
    config.addinivalue_line(
        "markers", "slow: Slow tests - tests that take more than 1 second"
    )
    config.addinivalue_line(
        "markers", "database: Tests requiring database operations"
    )
    config.addinivalue_line(
        "markers", "error_handling: Tests focused on error conditions"
    )
