"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file under pytest's tmp_path, so no
environment variables or .env files are needed to run the suite.
"""

import pytest
from fastapi.testclient import TestClient

from chatfeed.config import Settings, get_settings
from chatfeed.main import create_app
from chatfeed.storage import MessageStore


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Make sure no test sees settings cached by another one."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def database_path(tmp_path) -> str:
    return str(tmp_path / "chat.sqlite3")


@pytest.fixture
def settings(database_path) -> Settings:
    return Settings(_env_file=None, DATABASE_PATH=database_path, LOG_LEVEL="WARNING")


@pytest.fixture
def client(settings):
    """Test client with a fresh database; runs the application lifespan."""
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def store(database_path):
    """Initialized message store on a fresh database."""
    message_store = MessageStore(f"sqlite:///{database_path}")
    message_store.init_db()
    yield message_store
    message_store.dispose()


def add_message(client, message_id: str, sender: str = "Bob", content: str = "hi"):
    """Helper to submit a message through the HTTP API."""
    return client.post(
        "/api/v0/add_message",
        json={"id": message_id, "sender": sender, "content": content},
    )
