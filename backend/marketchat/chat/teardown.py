"""Connection teardown shared by the gateway and the delivery paths.

A handle whose send failed gets the same cleanup as an explicit
disconnect: it leaves every room, drops out of presence, and if that was
the user's notification target everyone is told the user went offline.
"""
import logging
from typing import Iterable

from .presence import Connection, PresenceRegistry, emit_many
from .rooms import RoomManager
from .schemas import ServerEvent

logger = logging.getLogger(__name__)


async def release_connection(
    conn: Connection, rooms: RoomManager, presence: PresenceRegistry
) -> bool:
    """Tear down one connection; safe to call more than once.

    Returns:
        True if the user went offline as a result.
    """
    if conn.closed:
        return False
    conn.closed = True
    conn.alive = False
    left = rooms.remove_connection(conn)
    offline = presence.unregister(conn)
    logger.info(
        f"[WS] User disconnected: {conn.user_id} (connection {conn.id}, "
        f"left {len(left)} room(s), offline={offline})"
    )
    if offline:
        await broadcast_status(rooms, presence, conn.user_id, "offline")
    return offline


async def release_connections(
    connections: Iterable[Connection], rooms: RoomManager, presence: PresenceRegistry
) -> None:
    for conn in connections:
        await release_connection(conn, rooms, presence)


async def broadcast_status(
    rooms: RoomManager, presence: PresenceRegistry, user_id: str, status: str
) -> None:
    """Send ``userStatus`` to every registered connection."""
    failed = await emit_many(
        presence.connections(),
        ServerEvent.USER_STATUS.value,
        {"userId": user_id, "status": status},
    )
    # Each dead handle is marked closed before its own broadcast, so this
    # terminates.
    await release_connections(failed, rooms, presence)
