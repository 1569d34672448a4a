"""
Tests for the GET /api/v0/messages history endpoint.

Tests cover:
- Empty history
- Ordering by sequence
- Resuming after a sequence (after)
- Storage failures
"""

import pytest

from chatfeed.models import Base
from conftest import add_message


@pytest.fixture
def seeded_client(client):
    """Client with pre-seeded messages for testing."""
    messages = [
        ("m3", "Alice", "Hello world"),
        ("m1", "Bob", "How are you?"),
        ("m2", "Alice", "Goodbye"),
    ]
    for message_id, sender, content in messages:
        assert add_message(client, message_id, sender, content).status_code == 204
    return client


class TestHistoryBasic:
    """Test basic history retrieval."""

    def test_empty_history(self, client):
        """Test an empty chat returns no messages."""
        response = client.get("/api/v0/messages")

        assert response.status_code == 200
        assert response.json() == {"data": [], "last_sequence": 0}

    def test_message_fields(self, seeded_client):
        """Test each entry carries the wire fields plus its sequence."""
        response = seeded_client.get("/api/v0/messages")

        entry = response.json()["data"][0]
        assert set(entry) == {"id", "sender", "content", "timestamp_ms", "sequence"}
        assert entry["id"] == "m3"
        assert entry["sender"] == "Alice"
        assert entry["content"] == "Hello world"
        assert isinstance(entry["timestamp_ms"], int)

    def test_ordering_follows_commit_order(self, seeded_client):
        """Test messages are ordered by sequence, not by id."""
        data = seeded_client.get("/api/v0/messages").json()

        assert [m["id"] for m in data["data"]] == ["m3", "m1", "m2"]
        assert [m["sequence"] for m in data["data"]] == [1, 2, 3]
        assert data["last_sequence"] == 3


class TestHistoryAfter:
    """Test the after parameter."""

    def test_after_skips_older_messages(self, seeded_client):
        """Test only messages with a greater sequence are returned."""
        data = seeded_client.get("/api/v0/messages", params={"after": 1}).json()

        assert [m["id"] for m in data["data"]] == ["m1", "m2"]
        assert data["last_sequence"] == 3

    def test_after_beyond_history(self, seeded_client):
        """Test after past the newest message returns nothing."""
        data = seeded_client.get("/api/v0/messages", params={"after": 10}).json()

        assert data == {"data": [], "last_sequence": 10}

    def test_negative_after_rejected(self, client):
        """Test negative after is rejected."""
        response = client.get("/api/v0/messages", params={"after": -1})

        assert response.status_code == 422


class TestHistoryStorageErrors:
    """Test storage failures."""

    def test_storage_unavailable_returns_503(self, client):
        """Test a broken store answers 503."""
        Base.metadata.drop_all(bind=client.app.state.store.engine)

        response = client.get("/api/v0/messages")

        assert response.status_code == 503
