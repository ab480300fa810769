"""Room membership and join-time read reconciliation.

A room is the process-local broadcast group of connections currently viewing
one chat thread, keyed 1:1 by chat id. Rooms are created on first join and
dropped when their last connection leaves.

Joins and message deliveries for the same chat share one per-chat lock
(``RoomManager.delivery_locks``), so a join lands either wholly before or
wholly after each append-and-broadcast.
"""
import logging
import threading
from typing import Dict, List, Optional, Set

from .concurrency import AsyncKeyedLock, run_blocking
from .errors import ForbiddenError, NotFoundError
from .presence import Connection
from .schemas import ChatThread, Identity, ServerEvent
from .store import ChatStore

logger = logging.getLogger(__name__)


def ensure_member(
    chat: ChatThread,
    user: Identity,
    admin_role: str,
    message: str = "Not authorized to access this chat",
) -> None:
    """Participants and admins may read/write a thread; everyone else is refused."""
    if chat.has_participant(user.id) or user.role == admin_role:
        return
    raise ForbiddenError(message)


class RoomManager:
    """Tracks which connections are joined to which chat rooms."""

    def __init__(
        self,
        store: ChatStore,
        admin_role: str = "admin",
        delivery_locks: Optional[AsyncKeyedLock] = None,
    ) -> None:
        self._store = store
        self._admin_role = admin_role
        self.delivery_locks = delivery_locks or AsyncKeyedLock()
        self._lock = threading.Lock()
        # chat_id -> joined connections
        self._rooms: Dict[str, Set[Connection]] = {}
        # connection -> chat ids, for disconnect cleanup
        self._memberships: Dict[Connection, Set[str]] = {}

    # =========================================================================
    # Operations
    # =========================================================================

    async def join_room(self, conn: Connection, chat_id: str) -> int:
        """Authorize, join, reconcile read state, acknowledge.

        Returns:
            Number of messages marked read.

        Raises:
            NotFoundError: Unknown chat id.
            ForbiddenError: Caller is neither participant nor admin.
        """
        chat = await run_blocking(self._store.get_chat, chat_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        ensure_member(chat, conn.user, self._admin_role, "Not authorized to join this chat")

        # Deliveries before this block saw the user outside the room;
        # deliveries after it see this handle as a member.
        async with self.delivery_locks.hold(chat.id):
            self.add(conn, chat.id)
            updated = await run_blocking(self._store.mark_read, chat.id, conn.user_id)
        logger.info(
            f"[Rooms] User {conn.user_id} joined chat {chat.id} "
            f"({self.size(chat.id)} connection(s), {updated} marked read)"
        )
        await conn.emit(ServerEvent.MESSAGES_READ.value, {"chatId": chat.id})
        return updated

    async def leave_room(self, conn: Connection, chat_id: str) -> bool:
        left = self.remove(conn, chat_id)
        if left:
            logger.info(f"[Rooms] User {conn.user_id} left chat {chat_id}")
        await conn.emit(ServerEvent.LEFT_CHAT.value, {"chatId": chat_id})
        return left

    # =========================================================================
    # Membership bookkeeping
    # =========================================================================

    def add(self, conn: Connection, chat_id: str) -> None:
        with self._lock:
            self._rooms.setdefault(chat_id, set()).add(conn)
            self._memberships.setdefault(conn, set()).add(chat_id)

    def remove(self, conn: Connection, chat_id: str) -> bool:
        with self._lock:
            return self._discard(conn, chat_id)

    def remove_connection(self, conn: Connection) -> List[str]:
        """Drop a connection from every room it joined (disconnect path)."""
        with self._lock:
            chat_ids = list(self._memberships.get(conn, ()))
            for chat_id in chat_ids:
                self._discard(conn, chat_id)
        return chat_ids

    def members(self, chat_id: str) -> List[Connection]:
        with self._lock:
            return list(self._rooms.get(chat_id, ()))

    def size(self, chat_id: str) -> int:
        with self._lock:
            return len(self._rooms.get(chat_id, ()))

    def is_user_in_room(self, chat_id: str, user_id: str) -> bool:
        with self._lock:
            return any(c.user_id == str(user_id) for c in self._rooms.get(chat_id, ()))

    def rooms_of(self, conn: Connection) -> Set[str]:
        with self._lock:
            return set(self._memberships.get(conn, ()))

    def clear(self) -> None:
        with self._lock:
            self._rooms.clear()
            self._memberships.clear()

    def _discard(self, conn: Connection, chat_id: str) -> bool:
        members = self._rooms.get(chat_id)
        if not members or conn not in members:
            return False
        members.discard(conn)
        if not members:
            del self._rooms[chat_id]
        joined = self._memberships.get(conn)
        if joined is not None:
            joined.discard(chat_id)
            if not joined:
                del self._memberships[conn]
        return True
