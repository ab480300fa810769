"""Connection gateway: handshake authentication and presence lifecycle.

Handshake:
    1. Extract bearer token (``?token=`` query param, else Authorization header)
    2. Verify token and resolve the user in the directory
    3. On failure: close with 1008 (policy violation), reason = error code.
       A directory failure closes with 1011 instead.
       The connection never reaches the registry.
    4. On success: accept, attach {id, name, role}, register presence,
       greet with ``connected``, broadcast ``userStatus online`` to everyone.

Teardown runs for explicit disconnects and for detected connection loss
alike: leave all rooms, drop presence, broadcast ``userStatus offline`` if
the user has no other registered connection.
"""
import logging
from typing import Optional

from fastapi import WebSocket

from marketchat.auth.tokens import TokenVerifier, bearer_from_header
from marketchat.directory.service import DirectoryService

from .concurrency import run_blocking
from .errors import AuthError, PersistenceError
from .presence import Connection, PresenceRegistry
from .rooms import RoomManager
from .schemas import Identity, ServerEvent
from .teardown import broadcast_status, release_connection

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011


class ConnectionGateway:
    """Authenticates realtime connections and owns their presence lifecycle."""

    def __init__(
        self,
        verifier: TokenVerifier,
        directory: DirectoryService,
        presence: PresenceRegistry,
        rooms: RoomManager,
        token_query_param: str = "token",
    ) -> None:
        self._verifier = verifier
        self._directory = directory
        self._presence = presence
        self._rooms = rooms
        self._token_query_param = token_query_param

    def extract_token(self, websocket: WebSocket) -> Optional[str]:
        token = websocket.query_params.get(self._token_query_param)
        if token:
            return token
        return bearer_from_header(websocket.headers.get("authorization"))

    def authenticate(self, token: Optional[str]) -> Identity:
        """Resolve a bearer token to an identity.

        Raises:
            AuthError: missing_token, invalid_token or user_not_found.
            PersistenceError: The directory lookup failed.
        """
        user_id = self._verifier.verify(token)
        user = self._directory.get_user(user_id)
        if user is None:
            raise AuthError(AuthError.USER_NOT_FOUND)
        return Identity(id=user.id, name=user.name, role=user.role)

    async def open(self, websocket: WebSocket) -> Optional[Connection]:
        """Run the handshake. Returns None if the connection was refused."""
        try:
            identity = await run_blocking(self.authenticate, self.extract_token(websocket))
        except AuthError as e:
            logger.warning(f"[WS] Rejected connection: {e.code}")
            await websocket.close(code=POLICY_VIOLATION, reason=e.code)
            return None
        except PersistenceError as e:
            logger.error(f"[WS] Handshake failed: {e.message}")
            await websocket.close(code=INTERNAL_ERROR, reason=e.code)
            return None

        await websocket.accept()
        conn = Connection(websocket, identity)
        self._presence.register(conn)
        logger.info(f"[WS] User connected: {identity.id} (connection {conn.id})")

        await conn.emit(ServerEvent.CONNECTED.value, {
            "user": identity.model_dump(),
            "onlineUsers": self._presence.online_user_ids(),
        })
        await broadcast_status(self._rooms, self._presence, identity.id, "online")
        return conn

    async def close(self, conn: Connection) -> None:
        """Tear down a connection; safe to call more than once."""
        await release_connection(conn, self._rooms, self._presence)
