"""Data models for chat threads, messages and the realtime wire protocol.

Storage models (:class:`ChatThread`, :class:`Message`) mirror the rows kept
by :mod:`marketchat.chat.store`. View models use the camelCase field names
clients see in event payloads and HTTP responses.
"""
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Realtime protocol
# =============================================================================


class ClientEvent(str, Enum):
    """Events a client may send."""
    JOIN_CHAT = "joinChat"
    LEAVE_CHAT = "leaveChat"
    SEND_MESSAGE = "sendMessage"
    CREATE_CHAT = "createChat"


class ServerEvent(str, Enum):
    """Events the server emits."""
    CONNECTED = "connected"
    NEW_MESSAGE = "newMessage"
    MESSAGES_READ = "messagesRead"
    LEFT_CHAT = "leftChat"
    CHAT_NOTIFICATION = "chatNotification"
    CHAT_CREATED = "chatCreated"
    USER_STATUS = "userStatus"
    ERROR = "error"


class EventFrame(BaseModel):
    """One JSON frame on the socket: ``{"event": ..., "data": ...}``."""
    event: str
    data: Any = None


class SendMessageInput(BaseModel):
    chatId: str
    content: Optional[str] = None


class CreateChatInput(BaseModel):
    participantId: str
    productId: Optional[str] = None
    initialMessage: Optional[str] = None


# =============================================================================
# Identity
# =============================================================================


class Identity(BaseModel):
    """Authenticated identity attached to a connection or HTTP request."""
    id: str
    name: str
    role: str


# =============================================================================
# Storage models
# =============================================================================


class Message(BaseModel):
    """A message in a thread's append-only log.

    ``position`` is the 0-based append index within the thread and is the
    ordering key; ``created_at`` never decreases along it.
    """
    id: str
    chat_id: str
    position: int
    sender: str
    content: str
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime


class ChatThread(BaseModel):
    id: str
    participants: List[str]
    messages: List[Message] = Field(default_factory=list)
    product_id: Optional[str] = None
    order_id: Optional[str] = None
    last_activity_at: datetime
    created_at: datetime
    is_active: bool = True

    def has_participant(self, user_id: str) -> bool:
        return str(user_id) in self.participants

    def unread_count(self, viewer_id: str) -> int:
        """Messages from other participants the viewer has not read yet."""
        return sum(
            1 for m in self.messages
            if m.sender != str(viewer_id) and not m.is_read
        )


# =============================================================================
# Read-side projection
# =============================================================================


class ParticipantView(BaseModel):
    id: str
    name: str
    profileImage: str = "default.jpg"


class SenderView(BaseModel):
    id: str
    name: str


class ProductView(BaseModel):
    id: str
    name: str
    price: float
    images: List[str] = Field(default_factory=list)


class OrderView(BaseModel):
    id: str
    status: str
    totalAmount: float


class MessageView(BaseModel):
    id: str
    sender: SenderView
    content: str
    isRead: bool
    readAt: Optional[datetime] = None
    createdAt: datetime


class ChatView(BaseModel):
    id: str
    participants: List[ParticipantView]
    product: Optional[ProductView] = None
    order: Optional[OrderView] = None
    messages: List[MessageView] = Field(default_factory=list)
    lastActivityAt: datetime
    createdAt: datetime
    isActive: bool = True
    unreadCount: int = 0


# =============================================================================
# HTTP request bodies
# =============================================================================


class CreateChatRequest(BaseModel):
    recipientId: str = Field(..., min_length=1)
    productId: Optional[str] = None
    orderId: Optional[str] = None
    initialMessage: Optional[str] = None


class AddMessageRequest(BaseModel):
    content: Optional[str] = None
