"""Test fixtures: settings pointed at a temporary SQLite database."""

import pytest
import pytest_asyncio

from chatrelay.config import Settings
from chatrelay.storage.database import Database
from chatrelay.storage.history import SqlHistoryStore


@pytest.fixture
def make_settings(tmp_path):
    """Build Settings isolated from the environment's .env file."""

    def _make(**overrides):
        values = {
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'chatrelay.db'}",
            "ollama_model_list": str(tmp_path / "ollama_model.json"),
            "agents_dir": str(tmp_path / "agents"),
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def database(settings):
    """Fresh SQLite database with all tables created."""
    db = Database(settings)
    await db.connect()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def store(database):
    return SqlHistoryStore(database)
