"""Chat thread creation and the thread-level queries built on it."""
import logging
from typing import List, Optional, Tuple

from marketchat.directory.service import DirectoryService

from .concurrency import run_blocking
from .errors import NotFoundError, ValidationError
from .presence import Connection, PresenceRegistry, emit_many
from .rooms import ensure_member
from .schemas import ChatThread, ChatView, Identity, ServerEvent
from .store import ChatStore
from .views import build_chat_view

logger = logging.getLogger(__name__)


class ChatLifecycleManager:
    """Get-or-create for chat threads, plus listing, read-marking and soft delete."""

    def __init__(
        self,
        store: ChatStore,
        directory: DirectoryService,
        presence: PresenceRegistry,
        admin_role: str = "admin",
    ) -> None:
        self._store = store
        self._directory = directory
        self._presence = presence
        self._admin_role = admin_role

    def get_or_create_chat(
        self,
        requester: Identity,
        participant_id: str,
        product_id: Optional[str] = None,
        order_id: Optional[str] = None,
        initial_message: Optional[str] = None,
    ) -> Tuple[ChatThread, bool]:
        """Find the active thread for this pair/product/order or create it.

        Idempotent on (unordered pair, product, order): repeating the call
        without ``initial_message`` returns the same thread untouched.

        Returns:
            Tuple of (chat, created).

        Raises:
            ValidationError: Participant unknown or equal to the requester.
        """
        if not participant_id:
            raise ValidationError("Participant ID is required")
        participant = self._directory.get_user(participant_id)
        if participant is None:
            raise ValidationError("Participant not found")
        if participant.id == requester.id:
            raise ValidationError("Cannot start a chat with yourself")

        text = initial_message.strip() if isinstance(initial_message, str) else None
        chat, created = self._store.find_or_create_chat(
            requester.id,
            participant.id,
            product_id=product_id,
            order_id=order_id,
            initial_message=text or None,
        )
        logger.info(
            "[Lifecycle] %s chat %s between %s and %s (product=%s, order=%s)",
            "Created" if created else "Reused",
            chat.id, requester.id, participant.id, product_id, order_id,
        )
        return chat, created

    async def create_and_notify(
        self,
        requester: Identity,
        participant_id: str,
        product_id: Optional[str] = None,
        order_id: Optional[str] = None,
        initial_message: Optional[str] = None,
        origin: Optional[Connection] = None,
    ) -> Tuple[ChatView, bool]:
        """Get-or-create, then send ``chatCreated`` to both parties.

        The requester is reached on ``origin`` when the call came in over a
        socket, otherwise on its presence target. The participant is reached
        on its presence target if online.

        Returns:
            Tuple of (requester's view of the chat, created).
        """
        chat, created = await run_blocking(
            self.get_or_create_chat,
            requester, participant_id, product_id, order_id, initial_message,
        )
        requester_view = await run_blocking(self.view, chat, requester.id)

        requester_conn = origin or self._presence.target_for(requester.id)
        if requester_conn is not None:
            await requester_conn.emit(
                ServerEvent.CHAT_CREATED.value, {"chat": requester_view.model_dump(mode="json")}
            )
        participant_conn = self._presence.target_for(participant_id)
        if participant_conn is not None and participant_conn is not requester_conn:
            participant_view = await run_blocking(self.view, chat, str(participant_id))
            await emit_many(
                [participant_conn],
                ServerEvent.CHAT_CREATED.value,
                {"chat": participant_view.model_dump(mode="json")},
            )
        return requester_view, created

    # =========================================================================
    # Thread queries
    # =========================================================================

    def view(self, chat: ChatThread, viewer_id: str) -> ChatView:
        return build_chat_view(chat, self._directory, viewer_id)

    def list_user_chats(self, user: Identity) -> List[ChatView]:
        chats = self._store.list_chats_for_user(user.id)
        return [self.view(chat, user.id) for chat in chats]

    def get_chat(self, user: Identity, chat_id: str) -> ChatView:
        chat = self._authorized_chat(user, chat_id, "You do not have permission to access this chat")
        return self.view(chat, user.id)

    def mark_chat_read(self, user: Identity, chat_id: str) -> int:
        chat = self._authorized_chat(user, chat_id, "You do not have permission to access this chat")
        return self._store.mark_read(chat.id, user.id)

    def deactivate_chat(self, user: Identity, chat_id: str) -> bool:
        chat = self._authorized_chat(user, chat_id, "You do not have permission to delete this chat")
        deactivated = self._store.deactivate_chat(chat.id)
        if deactivated:
            logger.info("[Lifecycle] Chat %s deactivated by %s", chat.id, user.id)
        return deactivated

    def _authorized_chat(self, user: Identity, chat_id: str, message: str) -> ChatThread:
        chat = self._store.get_chat(chat_id)
        if chat is None:
            raise NotFoundError("No chat found with that ID")
        ensure_member(chat, user, self._admin_role, message)
        return chat
