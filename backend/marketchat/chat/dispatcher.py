"""Message validation, persistence and fan-out.

Delivery order:
    1. validate content (trimmed, non-empty, bounded length)
    2. load thread, authorize sender
    3. append to the store (durable) -- nothing is delivered before this
    4. ``newMessage`` to every connection joined to the room
    5. ``chatNotification`` to participants who are online but not viewing
       the chat

Steps 3-5 run under the per-chat delivery lock shared with room joins, so
every room member sees messages in append order and a join never splits a
delivery. Handles that fail a send are torn down like a disconnect.
"""
import logging
from typing import Optional

from .concurrency import run_blocking
from .errors import NotFoundError, ValidationError
from .presence import Connection, PresenceRegistry, emit_many
from .rooms import RoomManager, ensure_member
from .schemas import ChatThread, Identity, Message, ServerEvent
from .store import ChatStore
from .teardown import release_connections
from .views import message_payload, preview

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """Sends messages into chat threads and delivers them to live clients."""

    def __init__(
        self,
        store: ChatStore,
        presence: PresenceRegistry,
        rooms: RoomManager,
        admin_role: str = "admin",
        preview_length: int = 80,
        max_message_length: int = 5000,
    ) -> None:
        self._store = store
        self._presence = presence
        self._rooms = rooms
        self._admin_role = admin_role
        self._preview_length = preview_length
        self._max_message_length = max_message_length
        self._delivery_locks = rooms.delivery_locks

    def validate_content(self, content: Optional[str]) -> str:
        """Return trimmed content or raise ValidationError."""
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message cannot be empty")
        text = content.strip()
        if len(text) > self._max_message_length:
            raise ValidationError(
                f"Message cannot exceed {self._max_message_length} characters"
            )
        return text

    async def send_message(
        self, conn: Connection, chat_id: str, content: Optional[str]
    ) -> Message:
        """Persist a message from a realtime connection and fan it out."""
        return await self.post(conn.user, chat_id, content)

    async def post(
        self, sender: Identity, chat_id: str, content: Optional[str]
    ) -> Message:
        """Persist a message from ``sender`` and fan it out.

        Shared by the realtime ``sendMessage`` event and the HTTP endpoint.

        Raises:
            ValidationError: Blank or oversized content (nothing persisted).
            NotFoundError: Unknown chat id.
            ForbiddenError: Sender is neither participant nor admin.
            PersistenceError: Store failure.
        """
        text = self.validate_content(content)
        chat = await run_blocking(self._store.get_chat, chat_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        ensure_member(
            chat, sender, self._admin_role, "Not authorized to send messages in this chat"
        )

        async with self._delivery_locks.hold(chat.id):
            message = await run_blocking(
                self._store.append_message, chat.id, sender.id, text
            )
            logger.info(
                f"[Dispatch] Message {message.id} from {sender.id} in chat {chat.id}: {text[:50]}"
            )
            await self.deliver(chat, message, sender)
        return message

    async def deliver(self, chat: ChatThread, message: Message, sender: Identity) -> None:
        """Broadcast a persisted message to the room and notify absent participants."""
        members = self._rooms.members(chat.id)
        failed = await emit_many(
            members, ServerEvent.NEW_MESSAGE.value, message_payload(chat.id, message, sender)
        )
        await release_connections(failed, self._rooms, self._presence)
        logger.debug(
            f"[Dispatch] Broadcast to {len(members) - len(failed)}/{len(members)} "
            f"connection(s) in chat {chat.id}"
        )

        notification = {
            "chatId": chat.id,
            "message": preview(message.content, self._preview_length),
            "sender": {"id": sender.id, "name": sender.name},
        }
        targets = []
        for participant_id in chat.participants:
            if participant_id == sender.id:
                continue
            if self._rooms.is_user_in_room(chat.id, participant_id):
                continue
            target = self._presence.target_for(participant_id)
            if target is not None:
                targets.append(target)
        failed = await emit_many(targets, ServerEvent.CHAT_NOTIFICATION.value, notification)
        await release_connections(failed, self._rooms, self._presence)
        if targets:
            logger.debug(
                f"[Dispatch] Notified {len(targets) - len(failed)} participant(s) of chat {chat.id}"
            )
