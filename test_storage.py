"""
Tests for the durable message store and the sequencer.

Tests cover:
- Idempotent insert and ordered retrieval
- Atomicity of concurrent inserts with the same id
- Gap free sequencing, also across failed inserts
- Restart durability
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from chatfeed.errors import StorageUnavailable
from chatfeed.models import Base, Message
from chatfeed.sequencer import Sequencer
from chatfeed.storage import MessageStore


class TestSequencer:
    """Test sequence and timestamp assignment."""

    def test_peek_does_not_advance(self):
        sequencer = Sequencer(clock=lambda: 1000)

        assert sequencer.peek() == (1, 1000)
        assert sequencer.peek() == (1, 1000)
        assert sequencer.last_sequence == 0

    def test_advance_moves_forward(self):
        sequencer = Sequencer(clock=lambda: 1000)

        sequencer.advance(*sequencer.peek())

        assert sequencer.last_sequence == 1
        assert sequencer.peek() == (2, 1000)

    def test_advance_rejects_gaps(self):
        sequencer = Sequencer()

        with pytest.raises(ValueError):
            sequencer.advance(2, 0)

    def test_timestamp_never_goes_backwards(self):
        """Test a wall clock stepping back does not reorder timestamps."""
        ticks = iter([5000, 4000])
        sequencer = Sequencer(clock=lambda: next(ticks))

        sequencer.advance(*sequencer.peek())

        assert sequencer.peek() == (2, 5000)

    def test_assign_stamps_message(self):
        sequencer = Sequencer(last_sequence=41, last_timestamp_ms=10, clock=lambda: 20)
        message = Message(message_id="m1", sender="Bob", content="hi")

        assert sequencer.assign(message) == 42
        assert message.sequence == 42
        assert message.created_at == 20
        assert sequencer.last_sequence == 42

    def test_resume(self):
        sequencer = Sequencer.resume(7, 123)

        assert sequencer.peek()[0] == 8
        assert sequencer.peek()[1] >= 123


class TestInsertIfAbsent:
    """Test idempotent inserts."""

    def test_first_insert_is_new(self, store):
        sequencer = Sequencer()

        message, was_new = store.insert_if_absent("m1", "Bob", "hi", sequencer)

        assert was_new is True
        assert message.sequence == 1
        assert message.message_id == "m1"
        assert sequencer.last_sequence == 1

    def test_second_insert_returns_original(self, store):
        sequencer = Sequencer()
        store.insert_if_absent("m1", "Bob", "hi", sequencer)

        message, was_new = store.insert_if_absent("m1", "Eve", "bye", sequencer)

        assert was_new is False
        assert (message.sender, message.content, message.sequence) == ("Bob", "hi", 1)
        assert sequencer.last_sequence == 1
        assert store.count() == 1

    def test_list_all_in_sequence_order(self, store):
        sequencer = Sequencer()
        for message_id in ["c", "a", "b"]:
            store.insert_if_absent(message_id, "Bob", message_id, sequencer)

        messages = store.list_all()

        assert [m.message_id for m in messages] == ["c", "a", "b"]
        assert [m.sequence for m in messages] == [1, 2, 3]

    def test_list_since(self, store):
        sequencer = Sequencer()
        for message_id in ["a", "b", "c"]:
            store.insert_if_absent(message_id, "Bob", message_id, sequencer)

        assert [m.message_id for m in store.list_since(2)] == ["c"]
        assert store.list_since(3) == []

    def test_get_by_id(self, store):
        store.insert_if_absent("m1", "Bob", "hi", Sequencer())

        assert store.get_by_id("m1").content == "hi"
        assert store.get_by_id("missing") is None

    def test_max_sequence(self, store):
        assert store.max_sequence() == (0, 0)

        sequencer = Sequencer(clock=lambda: 777)
        store.insert_if_absent("m1", "Bob", "hi", sequencer)
        store.insert_if_absent("m2", "Bob", "hi", sequencer)

        assert store.max_sequence() == (2, 777)

    def test_concurrent_inserts_with_same_id(self, store):
        """Test exactly one of many concurrent callers creates the message."""
        sequencer = Sequencer()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda i: store.insert_if_absent("same", f"sender-{i}", "hi", sequencer),
                range(16),
            ))

        assert sum(1 for _, was_new in results if was_new) == 1
        assert {message.sequence for message, _ in results} == {1}
        assert store.count() == 1

    def test_concurrent_inserts_with_distinct_ids_are_gap_free(self, store):
        sequencer = Sequencer()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(
                lambda i: store.insert_if_absent(f"m{i}", "Bob", "hi", sequencer),
                range(20),
            ))

        assert [m.sequence for m in store.list_all()] == list(range(1, 21))


class TestStorageFailures:
    """Test error surfacing."""

    def test_failed_insert_raises_and_keeps_sequence(self, store):
        sequencer = Sequencer()
        store.insert_if_absent("m1", "Bob", "hi", sequencer)
        Base.metadata.drop_all(bind=store.engine)

        with pytest.raises(StorageUnavailable):
            store.insert_if_absent("m2", "Bob", "hi", sequencer)

        assert sequencer.last_sequence == 1

    def test_sequence_conflict_is_storage_error(self, store):
        """Test a sequencer out of step with the store does not pass as a duplicate."""
        store.insert_if_absent("m1", "Bob", "hi", Sequencer())

        with pytest.raises(StorageUnavailable):
            store.insert_if_absent("m2", "Bob", "hi", Sequencer())

    def test_reads_raise_storage_unavailable(self, store):
        Base.metadata.drop_all(bind=store.engine)

        with pytest.raises(StorageUnavailable):
            store.list_all()
        with pytest.raises(StorageUnavailable):
            store.count()
        assert store.check_health() is False

    def test_unwritable_location(self, tmp_path):
        missing = tmp_path / "does-not-exist" / "chat.sqlite3"
        store = MessageStore(f"sqlite:///{missing}")

        with pytest.raises(StorageUnavailable):
            store.init_db()


class TestRestartDurability:
    """Test data survives reopening the database."""

    def test_reopen_restores_history_and_sequence(self, database_path):
        first = MessageStore(f"sqlite:///{database_path}")
        first.init_db()
        sequencer = Sequencer()
        for message_id in ["a", "b", "c"]:
            first.insert_if_absent(message_id, "Bob", message_id, sequencer)
        first.dispose()

        second = MessageStore(f"sqlite:///{database_path}")
        second.init_db()
        resumed = Sequencer.resume(*second.max_sequence())

        assert [(m.message_id, m.sequence) for m in second.list_all()] == [("a", 1), ("b", 2), ("c", 3)]
        message, was_new = second.insert_if_absent("d", "Bob", "d", resumed)
        assert was_new is True
        assert message.sequence == 4
        second.dispose()
