"""Tests for message validation, persistence and fan-out."""
import asyncio

import pytest

from marketchat.chat.dispatcher import MessageDispatcher
from marketchat.chat.errors import ForbiddenError, NotFoundError, ValidationError
from marketchat.chat.presence import Connection, PresenceRegistry
from marketchat.chat.rooms import RoomManager
from marketchat.chat.views import preview

from conftest import FakeTransport, fake_connection, identity


@pytest.fixture
def presence():
    return PresenceRegistry()


@pytest.fixture
def rooms(store):
    return RoomManager(store)


@pytest.fixture
def dispatcher(store, presence, rooms):
    return MessageDispatcher(store, presence, rooms, preview_length=20, max_message_length=50)


@pytest.fixture
def chat(store):
    return store.create_chat(["u1", "u2"], product_id="p1")


def online(presence, user_id, fail=False):
    conn = fake_connection(user_id, fail=fail)
    presence.register(conn)
    return conn


class TestValidation:
    @pytest.mark.parametrize("content", ["", "   ", "\n\t", None, 42])
    def test_blank_content_rejected(self, dispatcher, content):
        with pytest.raises(ValidationError):
            dispatcher.validate_content(content)

    def test_content_is_trimmed(self, dispatcher):
        assert dispatcher.validate_content("  hi there \n") == "hi there"

    def test_oversized_content_rejected(self, dispatcher):
        with pytest.raises(ValidationError):
            dispatcher.validate_content("x" * 51)

    @pytest.mark.asyncio
    async def test_whitespace_message_is_not_persisted(self, dispatcher, store, chat):
        alice = fake_connection("u1")

        with pytest.raises(ValidationError):
            await dispatcher.send_message(alice, chat.id, "   ")

        assert store.get_chat(chat.id).messages == []
        assert alice.transport.sent == []


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unknown_chat(self, dispatcher):
        with pytest.raises(NotFoundError):
            await dispatcher.send_message(fake_connection("u1"), "missing", "hello")

    @pytest.mark.asyncio
    async def test_non_participant_forbidden(self, dispatcher, store, chat):
        with pytest.raises(ForbiddenError):
            await dispatcher.send_message(fake_connection("u3"), chat.id, "hello")
        assert store.get_chat(chat.id).messages == []

    @pytest.mark.asyncio
    async def test_admin_may_post(self, dispatcher, store, chat):
        await dispatcher.send_message(fake_connection("admin"), chat.id, "moderator here")
        assert store.get_chat(chat.id).messages[0].sender == "admin"


class TestFanOut:
    @pytest.mark.asyncio
    async def test_room_broadcast_includes_senders_other_devices(
        self, dispatcher, presence, rooms, chat
    ):
        alice_phone = online(presence, "u1")
        alice_laptop = online(presence, "u1")
        bob = online(presence, "u2")
        rooms.add(alice_phone, chat.id)
        rooms.add(alice_laptop, chat.id)
        rooms.add(bob, chat.id)

        message = await dispatcher.send_message(alice_phone, chat.id, "  Yes, available ")

        for conn in (alice_phone, alice_laptop, bob):
            frames = conn.transport.events("newMessage")
            assert len(frames) == 1
            payload = frames[0]["data"]
            assert payload["chatId"] == chat.id
            assert payload["message"]["id"] == message.id
            assert payload["message"]["content"] == "Yes, available"
            assert payload["message"]["sender"] == {"id": "u1", "name": "Alice"}
            assert payload["message"]["isRead"] is False
        # Bob is viewing the chat, so no notification.
        assert bob.transport.events("chatNotification") == []

    @pytest.mark.asyncio
    async def test_online_participant_outside_room_is_notified(
        self, dispatcher, presence, rooms, chat
    ):
        alice = online(presence, "u1")
        alice_other = online(presence, "u1")
        bob = online(presence, "u2")
        rooms.add(alice, chat.id)

        await dispatcher.send_message(alice, chat.id, "Yes, available")

        assert bob.transport.events("newMessage") == []
        notes = bob.transport.events("chatNotification")
        assert notes == [{
            "event": "chatNotification",
            "data": {
                "chatId": chat.id,
                "message": "Yes, available",
                "sender": {"id": "u1", "name": "Alice"},
            },
        }]
        # Not joined, so the sender's other device gets neither event.
        assert alice_other.transport.sent == []
        assert alice.transport.events("chatNotification") == []

    @pytest.mark.asyncio
    async def test_offline_participant_gets_nothing(self, dispatcher, presence, rooms, store, chat):
        alice = online(presence, "u1")
        rooms.add(alice, chat.id)

        await dispatcher.send_message(alice, chat.id, "anyone there?")

        assert store.get_chat(chat.id).unread_count("u2") == 1

    @pytest.mark.asyncio
    async def test_notification_preview_is_truncated(self, dispatcher, presence, chat):
        alice = online(presence, "u1")
        bob = online(presence, "u2")
        text = "These tomatoes are picked fresh every morning"

        await dispatcher.send_message(alice, chat.id, text)

        note = bob.transport.events("chatNotification")[0]["data"]["message"]
        assert note == preview(text, 20) == "These tomatoes are…"
        assert len(note) <= 20

    @pytest.mark.asyncio
    async def test_dead_room_member_is_dropped(self, dispatcher, presence, rooms, store, chat):
        alice = online(presence, "u1")
        broken = online(presence, "u2", fail=True)
        rooms.add(alice, chat.id)
        rooms.add(broken, chat.id)

        await dispatcher.send_message(alice, chat.id, "hello")

        assert rooms.members(chat.id) == [alice]
        assert not presence.is_online("u2")
        assert {"event": "userStatus", "data": {"userId": "u2", "status": "offline"}} \
            in alice.transport.sent
        assert len(store.get_chat(chat.id).messages) == 1

    @pytest.mark.asyncio
    async def test_dead_notification_target_goes_offline(self, dispatcher, presence, rooms, chat):
        alice = online(presence, "u1")
        carol = online(presence, "u3")
        bob = online(presence, "u2", fail=True)
        rooms.add(alice, chat.id)

        await dispatcher.send_message(alice, chat.id, "ping")

        assert bob.alive is False
        assert not presence.is_online("u2")
        assert bob not in presence.connections()
        offline = {"event": "userStatus", "data": {"userId": "u2", "status": "offline"}}
        assert offline in carol.transport.sent
        assert offline in alice.transport.sent

        await dispatcher.send_message(alice, chat.id, "anyone?")
        assert carol.transport.sent.count(offline) == 1

    @pytest.mark.asyncio
    async def test_post_from_identity_without_connection(self, dispatcher, presence, rooms, chat):
        bob = online(presence, "u2")
        rooms.add(bob, chat.id)

        await dispatcher.post(identity("u1"), chat.id, "sent over HTTP")

        assert bob.transport.events("newMessage")[0]["data"]["message"]["content"] == "sent over HTTP"


class TestConcurrentSends:
    @pytest.mark.asyncio
    async def test_both_messages_persist_and_arrive_in_append_order(
        self, dispatcher, presence, rooms, store, chat
    ):
        alice = online(presence, "u1")
        bob = online(presence, "u2")
        watcher = fake_connection("admin")
        for conn in (alice, bob, watcher):
            rooms.add(conn, chat.id)

        sends = []
        for i in range(5):
            sends.append(dispatcher.send_message(alice, chat.id, f"alice {i}"))
            sends.append(dispatcher.send_message(bob, chat.id, f"bob {i}"))
        await asyncio.gather(*sends)

        stored = store.get_chat(chat.id)
        assert len(stored.messages) == 10
        stored_ids = [m.id for m in stored.messages]
        for conn in (alice, bob, watcher):
            seen = [f["data"]["message"]["id"] for f in conn.transport.events("newMessage")]
            assert seen == stored_ids


class GatedTransport(FakeTransport):
    """Holds every send until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.sending = asyncio.Event()
        self.gate = asyncio.Event()

    async def send_json(self, data):
        self.sending.set()
        await self.gate.wait()
        await super().send_json(data)


class SlowTransport(FakeTransport):
    async def send_json(self, data):
        await asyncio.sleep(0.01)
        await super().send_json(data)


def assert_read_messages_reached(store, chat_id, conn):
    """Everything marked read for ``conn``'s user arrived on ``conn``."""
    delivered = {f["data"]["message"]["content"] for f in conn.transport.events("newMessage")}
    notified = {f["data"]["message"] for f in conn.transport.events("chatNotification")}
    for message in store.get_chat(chat_id).messages:
        if message.sender != conn.user_id and message.is_read:
            assert message.content in delivered | notified, message.content


class TestJoinDuringDelivery:
    @pytest.mark.asyncio
    async def test_join_waits_for_broadcast_in_flight(self, dispatcher, presence, rooms, store, chat):
        gated = GatedTransport()
        alice = Connection(gated, identity("u1"))
        presence.register(alice)
        rooms.add(alice, chat.id)
        bob = online(presence, "u2")

        send = asyncio.create_task(dispatcher.send_message(alice, chat.id, "hello"))
        await gated.sending.wait()
        join = asyncio.create_task(rooms.join_room(bob, chat.id))
        await asyncio.sleep(0.05)
        assert not rooms.is_user_in_room(chat.id, "u2")

        gated.gate.set()
        await send
        assert await join == 1

        # The message went out while Bob was outside the room.
        assert [n["data"]["message"] for n in bob.transport.events("chatNotification")] == ["hello"]
        assert store.get_chat(chat.id).messages[0].is_read is True
        assert_read_messages_reached(store, chat.id, bob)

        await dispatcher.send_message(alice, chat.id, "still there?")
        contents = [f["data"]["message"]["content"] for f in bob.transport.events("newMessage")]
        assert contents == ["still there?"]
        assert store.get_chat(chat.id).messages[1].is_read is False

    @pytest.mark.asyncio
    async def test_interleaved_sends_and_join(self, dispatcher, presence, rooms, store, chat):
        alice = Connection(SlowTransport(), identity("u1"))
        presence.register(alice)
        rooms.add(alice, chat.id)
        bob = online(presence, "u2")

        async def sends():
            for i in range(6):
                await dispatcher.send_message(alice, chat.id, f"msg {i}")

        async def join_midway():
            await asyncio.sleep(0.025)
            await rooms.join_room(bob, chat.id)

        await asyncio.gather(sends(), join_midway())

        assert_read_messages_reached(store, chat.id, bob)
        # Whatever stayed unread was broadcast to Bob in the room.
        delivered = {f["data"]["message"]["content"] for f in bob.transport.events("newMessage")}
        for message in store.get_chat(chat.id).messages:
            if not message.is_read:
                assert message.content in delivered
