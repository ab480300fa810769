"""Realtime event handlers.

Every inbound frame is routed here. This is the error boundary for the
socket: ``ChatError`` becomes an ``error`` event with its message and code,
anything unexpected is logged and reported with a per-operation message.
Neither closes the connection.
"""
import logging
from typing import Any, Awaitable, Callable, Dict

from pydantic import ValidationError as PayloadError

from .errors import ChatError, ValidationError
from .hub import ChatHub
from .presence import Connection
from .schemas import ClientEvent, CreateChatInput, EventFrame, SendMessageInput, ServerEvent

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Any], Awaitable[None]]

# Generic text reported when an operation fails unexpectedly
FAILURE_MESSAGES = {
    ClientEvent.JOIN_CHAT.value: "Error joining chat",
    ClientEvent.LEAVE_CHAT.value: "Error leaving chat",
    ClientEvent.SEND_MESSAGE.value: "Error sending message",
    ClientEvent.CREATE_CHAT.value: "Error creating chat",
}


def _chat_id_from(data: Any) -> str:
    """joinChat/leaveChat accept a bare id or ``{"chatId": ...}``."""
    if isinstance(data, dict):
        data = data.get("chatId")
    if not isinstance(data, str) or not data.strip():
        raise ValidationError("Chat ID is required")
    return data.strip()


class RealtimeHandlers:
    """Maps client events to hub operations for one process."""

    def __init__(self, hub: ChatHub) -> None:
        self._hub = hub
        self._handlers: Dict[str, Handler] = {
            ClientEvent.JOIN_CHAT.value: self.on_join_chat,
            ClientEvent.LEAVE_CHAT.value: self.on_leave_chat,
            ClientEvent.SEND_MESSAGE.value: self.on_send_message,
            ClientEvent.CREATE_CHAT.value: self.on_create_chat,
        }

    async def dispatch(self, conn: Connection, frame: Any) -> None:
        try:
            parsed = EventFrame.model_validate(frame)
        except PayloadError:
            await conn.emit(ServerEvent.ERROR.value, {"message": "Malformed event"})
            return

        event = parsed.event
        handler = self._handlers.get(event)
        if handler is None:
            await conn.emit(ServerEvent.ERROR.value, {"message": f"Unknown event: {event}"})
            return

        logger.debug("[WS] %s received: event=%s", conn.user_id, event)
        try:
            await handler(conn, parsed.data)
        except ChatError as e:
            logger.info(f"[WS] {event} from {conn.user_id} failed: {e.code}: {e.message}")
            await conn.emit(ServerEvent.ERROR.value, e.to_payload())
        except Exception:
            logger.exception(f"[WS] {event} from {conn.user_id} raised")
            await conn.emit(ServerEvent.ERROR.value, {"message": FAILURE_MESSAGES[event]})

    # =========================================================================
    # Handlers
    # =========================================================================

    async def on_join_chat(self, conn: Connection, data: Any) -> None:
        await self._hub.rooms.join_room(conn, _chat_id_from(data))

    async def on_leave_chat(self, conn: Connection, data: Any) -> None:
        await self._hub.rooms.leave_room(conn, _chat_id_from(data))

    async def on_send_message(self, conn: Connection, data: Any) -> None:
        try:
            payload = SendMessageInput.model_validate(data)
        except PayloadError:
            raise ValidationError("sendMessage requires chatId and content")
        await self._hub.dispatcher.send_message(conn, payload.chatId, payload.content)

    async def on_create_chat(self, conn: Connection, data: Any) -> None:
        try:
            payload = CreateChatInput.model_validate(data)
        except PayloadError:
            raise ValidationError("createChat requires participantId")
        await self._hub.lifecycle.create_and_notify(
            conn.user,
            payload.participantId,
            product_id=payload.productId,
            initial_message=payload.initialMessage,
            origin=conn,
        )
