"""Wiring for the chat subsystem.

One :class:`ChatHub` per process holds the store, directory, presence
registry, rooms and the three operation components. The FastAPI lifespan
installs it; tests install their own with in-memory databases.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from marketchat.auth.tokens import TokenVerifier
from marketchat.config import AppSettings, get_config
from marketchat.directory.service import DirectoryService

from .concurrency import AsyncKeyedLock
from .dispatcher import MessageDispatcher
from .gateway import ConnectionGateway
from .lifecycle import ChatLifecycleManager
from .presence import PresenceRegistry
from .rooms import RoomManager
from .store import ChatStore

logger = logging.getLogger(__name__)


@dataclass
class ChatHub:
    store: ChatStore
    directory: DirectoryService
    presence: PresenceRegistry
    rooms: RoomManager
    dispatcher: MessageDispatcher
    lifecycle: ChatLifecycleManager
    gateway: ConnectionGateway

    @classmethod
    def build(
        cls,
        config: AppSettings,
        store: Optional[ChatStore] = None,
        directory: Optional[DirectoryService] = None,
    ) -> "ChatHub":
        store = store or ChatStore.get_instance(config.chat.db_path)
        directory = directory or DirectoryService.get_instance(config.directory.db_path)
        admin_role = config.auth.admin_role

        presence = PresenceRegistry()
        # Joins and deliveries for one chat serialize on the same lock.
        rooms = RoomManager(store, admin_role=admin_role, delivery_locks=AsyncKeyedLock())
        dispatcher = MessageDispatcher(
            store,
            presence,
            rooms,
            admin_role=admin_role,
            preview_length=config.chat.notification_preview_length,
            max_message_length=config.chat.max_message_length,
        )
        lifecycle = ChatLifecycleManager(store, directory, presence, admin_role=admin_role)
        verifier = TokenVerifier(
            config.secrets.jwt.secret_key,
            algorithm=config.secrets.jwt.algorithm,
            leeway_seconds=config.auth.leeway_seconds,
        )
        gateway = ConnectionGateway(
            verifier,
            directory,
            presence,
            rooms,
            token_query_param=config.auth.token_query_param,
        )
        logger.info("Chat hub ready (admin_role=%s)", admin_role)
        return cls(
            store=store,
            directory=directory,
            presence=presence,
            rooms=rooms,
            dispatcher=dispatcher,
            lifecycle=lifecycle,
            gateway=gateway,
        )


_hub: Optional[ChatHub] = None


def get_hub() -> ChatHub:
    """Return the active hub, building one from config on first use."""
    global _hub
    if _hub is None:
        _hub = ChatHub.build(get_config())
    return _hub


def set_hub(hub: ChatHub) -> None:
    global _hub
    _hub = hub


def reset_hub() -> None:
    global _hub
    _hub = None
