"""Connection handles and the process-wide presence registry.

Presence is ephemeral and process-local: it starts empty, is mutated only by
the connect path of :mod:`marketchat.chat.gateway` and the teardown in
:mod:`marketchat.chat.teardown`, and is lost on restart (chat history is
not). A deployment with several server processes would need an external
presence store or pub/sub fan-out; this registry does not attempt
cross-process sync.

Notification target policy:
    Last writer wins. A second connection from the same user replaces the
    first as that user's notification target. Room broadcasts still reach
    every joined handle, so a user's other devices keep receiving messages
    for chats they have open.
"""
import asyncio
import logging
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from .schemas import Identity

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Anything that can deliver a JSON-serializable dict (a FastAPI WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


class Connection:
    """A live, authenticated realtime connection.

    Wraps the transport with the identity the gateway attached during the
    handshake. Hashable by identity so it can live in room and registry sets.
    """

    def __init__(self, transport: Transport, user: Identity) -> None:
        self.id = str(uuid.uuid4())
        self.transport = transport
        self.user = user
        self.alive = True
        self.closed = False

    @property
    def user_id(self) -> str:
        return self.user.id

    async def emit(self, event: str, data: Any = None) -> bool:
        """Send one event frame.

        Returns:
            True if delivered, False if the transport failed (the handle is
            then marked dead and will be cleaned up by its owner).
        """
        if not self.alive:
            return False
        try:
            await self.transport.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {self.id}: {e}")
            self.alive = False
            return False

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user={self.user.id!r})"


async def emit_many(
    connections: Iterable[Connection], event: str, data: Any = None
) -> List[Connection]:
    """Send the same event to several connections concurrently.

    Returns:
        The connections whose send failed.
    """
    targets = list(connections)
    if not targets:
        return []
    results = await asyncio.gather(
        *[conn.emit(event, data) for conn in targets],
        return_exceptions=True,
    )
    return [conn for conn, ok in zip(targets, results) if ok is not True]


class PresenceRegistry:
    """Maps user id -> notification target and tracks every live connection.

    All methods are synchronous and guarded by one lock, so they can be
    called from the event loop or from worker threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # user_id -> last registered connection (notification target)
        self._targets: Dict[str, Connection] = {}
        # every live authenticated connection, for global broadcasts
        self._connections: Set[Connection] = set()

    def register(self, conn: Connection) -> Optional[Connection]:
        """Register a connection; it becomes its user's notification target.

        Returns:
            The connection it replaced as target, if any.
        """
        with self._lock:
            previous = self._targets.get(conn.user_id)
            self._targets[conn.user_id] = conn
            self._connections.add(conn)
        if previous is not None and previous is not conn:
            logger.info(
                f"[Presence] User {conn.user_id} reconnected; "
                f"connection {conn.id} replaces {previous.id} as target"
            )
        return previous

    def unregister(self, conn: Connection) -> bool:
        """Remove a connection.

        The user's presence entry is only dropped if ``conn`` is still the
        registered target.

        Returns:
            True if the user has no notification target afterwards (went
            offline), False otherwise.
        """
        with self._lock:
            self._connections.discard(conn)
            if self._targets.get(conn.user_id) is conn:
                del self._targets[conn.user_id]
            return conn.user_id not in self._targets

    def target_for(self, user_id: str) -> Optional[Connection]:
        with self._lock:
            return self._targets.get(str(user_id))

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return str(user_id) in self._targets

    def online_user_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._targets)

    def connections(self) -> List[Connection]:
        with self._lock:
            return list(self._connections)

    def clear(self) -> None:
        with self._lock:
            self._targets.clear()
            self._connections.clear()
