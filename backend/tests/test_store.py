"""Tests for the DuckDB chat store."""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from marketchat.chat.concurrency import KeyedLock
from marketchat.chat.errors import NotFoundError
from marketchat.chat.store import ChatStore, pair_key


class TestCreateAndRead:
    def test_create_chat_without_messages(self, store):
        chat = store.create_chat(["u1", "u2"], product_id="p1")

        assert chat.participants == ["u1", "u2"]
        assert chat.product_id == "p1"
        assert chat.order_id is None
        assert chat.messages == []
        assert chat.is_active is True

    def test_create_chat_with_initial_message(self, store):
        chat = store.create_chat(
            ["u1", "u2"], initial_sender="u1", initial_content="Is this available?"
        )

        assert len(chat.messages) == 1
        message = chat.messages[0]
        assert message.sender == "u1"
        assert message.position == 0
        assert message.is_read is False
        assert message.read_at is None

    def test_create_chat_needs_two_distinct_participants(self, store):
        with pytest.raises(ValueError):
            store.create_chat(["u1", "u1"])

    def test_get_unknown_chat_returns_none(self, store):
        assert store.get_chat("missing") is None

    def test_require_chat_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.require_chat("missing")

    def test_pair_key_is_order_independent(self):
        assert pair_key("u1", "u2") == pair_key("u2", "u1")


class TestAppend:
    def test_messages_keep_append_order(self, store):
        chat = store.create_chat(["u1", "u2"])
        for i in range(5):
            store.append_message(chat.id, "u1" if i % 2 else "u2", f"msg {i}")

        stored = store.get_chat(chat.id)
        assert [m.content for m in stored.messages] == [f"msg {i}" for i in range(5)]
        assert [m.position for m in stored.messages] == list(range(5))
        created = [m.created_at for m in stored.messages]
        assert created == sorted(created)

    def test_append_bumps_last_activity(self, store):
        chat = store.create_chat(["u1", "u2"])
        message = store.append_message(chat.id, "u1", "hello")

        stored = store.get_chat(chat.id)
        assert stored.last_activity_at == message.created_at
        assert stored.last_activity_at >= chat.last_activity_at

    def test_append_to_missing_chat(self, store):
        with pytest.raises(NotFoundError):
            store.append_message("missing", "u1", "hello")

    def test_concurrent_appends_lose_nothing(self, store):
        chat = store.create_chat(["u1", "u2"])
        barrier = threading.Barrier(8)

        def send(i):
            barrier.wait()
            return store.append_message(chat.id, "u1" if i % 2 else "u2", f"m{i}")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(send, range(8)))

        stored = store.get_chat(chat.id)
        assert len(stored.messages) == 8
        assert sorted(m.content for m in stored.messages) == sorted(f"m{i}" for i in range(8))
        assert [m.position for m in stored.messages] == list(range(8))
        assert sorted(r.position for r in results) == list(range(8))
        created = [m.created_at for m in stored.messages]
        assert created == sorted(created)


class TestMarkRead:
    def test_marks_only_messages_from_others(self, store):
        chat = store.create_chat(["u1", "u2"])
        store.append_message(chat.id, "u1", "from alice")
        store.append_message(chat.id, "u2", "from bob")

        assert store.mark_read(chat.id, "u2") == 1

        stored = store.get_chat(chat.id)
        by_sender = {m.sender: m for m in stored.messages}
        assert by_sender["u1"].is_read is True
        assert by_sender["u1"].read_at is not None
        assert by_sender["u2"].is_read is False
        assert by_sender["u2"].read_at is None

    def test_read_at_is_set_once(self, store):
        chat = store.create_chat(["u1", "u2"])
        store.append_message(chat.id, "u1", "hello")
        store.mark_read(chat.id, "u2")
        first = store.get_chat(chat.id).messages[0].read_at

        assert store.mark_read(chat.id, "u2") == 0
        again = store.get_chat(chat.id).messages[0]
        assert again.is_read is True
        assert again.read_at == first

    def test_unread_count_is_viewer_relative(self, store):
        chat = store.create_chat(["u1", "u2"], initial_sender="u1", initial_content="hi")

        assert chat.unread_count("u2") == 1
        assert chat.unread_count("u1") == 0

    def test_concurrent_reconciliation_counts_once(self, store):
        chat = store.create_chat(["u1", "u2"])
        for i in range(10):
            store.append_message(chat.id, "u1", f"m{i}")

        with ThreadPoolExecutor(max_workers=4) as pool:
            counts = list(pool.map(lambda _: store.mark_read(chat.id, "u2"), range(4)))

        assert sum(counts) == 10
        assert all(m.is_read for m in store.get_chat(chat.id).messages)


class TestFindOrCreate:
    def test_same_key_returns_same_chat(self, store):
        first, created = store.find_or_create_chat("u1", "u2", product_id="p1")
        second, created_again = store.find_or_create_chat("u2", "u1", product_id="p1")

        assert created is True
        assert created_again is False
        assert first.id == second.id

    def test_product_is_part_of_the_key(self, store):
        with_product, _ = store.find_or_create_chat("u1", "u2", product_id="p1")
        without_product, created = store.find_or_create_chat("u1", "u2")

        assert created is True
        assert with_product.id != without_product.id

    def test_initial_message_appends_to_existing(self, store):
        chat, _ = store.find_or_create_chat("u1", "u2", product_id="p1",
                                            initial_message="first")
        again, created = store.find_or_create_chat("u1", "u2", product_id="p1",
                                                   initial_message="second")

        assert created is False
        assert again.id == chat.id
        assert [m.content for m in again.messages] == ["first", "second"]

    def test_concurrent_get_or_create_makes_one_chat(self, store):
        barrier = threading.Barrier(6)

        def create(_):
            barrier.wait()
            return store.find_or_create_chat("u1", "u2", product_id="p1")[0].id

        with ThreadPoolExecutor(max_workers=6) as pool:
            ids = set(pool.map(create, range(6)))

        assert len(ids) == 1
        assert len(store.list_chats_for_user("u1")) == 1

    def test_inactive_chat_is_not_reused(self, store):
        chat, _ = store.find_or_create_chat("u1", "u2", product_id="p1")
        assert store.deactivate_chat(chat.id) is True

        fresh, created = store.find_or_create_chat("u1", "u2", product_id="p1")
        assert created is True
        assert fresh.id != chat.id


class TestListing:
    def test_list_orders_by_recent_activity(self, store):
        older = store.create_chat(["u1", "u2"])
        newer = store.create_chat(["u1", "u3"])
        store.append_message(older.id, "u2", "bump")

        chats = store.list_chats_for_user("u1")
        assert [c.id for c in chats] == [older.id, newer.id]

    def test_list_excludes_inactive_and_foreign_chats(self, store):
        mine = store.create_chat(["u1", "u2"])
        gone = store.create_chat(["u1", "u3"])
        store.create_chat(["u2", "u3"])
        store.deactivate_chat(gone.id)

        assert [c.id for c in store.list_chats_for_user("u1")] == [mine.id]
        assert len(store.list_chats_for_user("u1", include_inactive=True)) == 2

    def test_deactivate_twice(self, store):
        chat = store.create_chat(["u1", "u2"])
        assert store.deactivate_chat(chat.id) is True
        assert store.deactivate_chat(chat.id) is False


class TestSingleton:
    def test_get_instance_and_reset(self):
        ChatStore.reset_instance()
        first = ChatStore.get_instance(":memory:")
        assert ChatStore.get_instance() is first
        ChatStore.reset_instance()
        assert ChatStore._instance is None


class TestKeyedLock:
    def test_entries_are_dropped_when_released(self):
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0
