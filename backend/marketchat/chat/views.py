"""Read-side projection of chat threads.

Resolves participant, sender, product and order display fields from the
directory. This is a presentation concern only; nothing here touches the
store.
"""
from typing import Dict, Optional

from marketchat.directory.service import DirectoryService

from .schemas import (
    ChatThread,
    ChatView,
    Identity,
    Message,
    MessageView,
    OrderView,
    ParticipantView,
    ProductView,
    SenderView,
)

UNKNOWN_USER = "Unknown user"


def message_view(message: Message, sender_name: str) -> MessageView:
    return MessageView(
        id=message.id,
        sender=SenderView(id=message.sender, name=sender_name),
        content=message.content,
        isRead=message.is_read,
        readAt=message.read_at,
        createdAt=message.created_at,
    )


def message_payload(chat_id: str, message: Message, sender: Identity) -> dict:
    """``newMessage`` event payload."""
    return {
        "chatId": chat_id,
        "message": message_view(message, sender.name).model_dump(mode="json"),
    }


def preview(content: str, limit: int) -> str:
    """Truncate message text for notifications."""
    if len(content) <= limit:
        return content
    return content[: max(limit - 1, 0)].rstrip() + "…"


def build_chat_view(
    chat: ChatThread,
    directory: DirectoryService,
    viewer_id: Optional[str] = None,
) -> ChatView:
    """Project a thread for one viewer (unreadCount is viewer-relative)."""
    participants = []
    names: Dict[str, str] = {}
    for user_id in chat.participants:
        user = directory.get_user(user_id)
        if user is None:
            names[user_id] = UNKNOWN_USER
            participants.append(ParticipantView(id=user_id, name=UNKNOWN_USER))
            continue
        names[user_id] = user.name
        participants.append(
            ParticipantView(id=user.id, name=user.name, profileImage=user.profile_image)
        )

    messages = []
    for message in chat.messages:
        if message.sender not in names:
            user = directory.get_user(message.sender)
            names[message.sender] = user.name if user else UNKNOWN_USER
        messages.append(message_view(message, names[message.sender]))

    product = None
    if chat.product_id:
        record = directory.get_product(chat.product_id)
        if record is not None:
            product = ProductView(
                id=record.id, name=record.name, price=record.price, images=record.images
            )

    order = None
    if chat.order_id:
        record = directory.get_order(chat.order_id)
        if record is not None:
            order = OrderView(id=record.id, status=record.status, totalAmount=record.total_amount)

    return ChatView(
        id=chat.id,
        participants=participants,
        product=product,
        order=order,
        messages=messages,
        lastActivityAt=chat.last_activity_at,
        createdAt=chat.created_at,
        isActive=chat.is_active,
        unreadCount=chat.unread_count(viewer_id) if viewer_id else 0,
    )
