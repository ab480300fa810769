"""Chat router providing the realtime WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: authenticated realtime chat + presence
    - GET    /chats: current user's active chats, most recent first
    - GET    /chats/{chat_id}: one chat (participants and admins)
    - POST   /chats: get-or-create a chat with another user
    - POST   /chats/{chat_id}/messages: send a message (fanned out like a socket send)
    - PATCH  /chats/{chat_id}/read: mark the chat read for the caller
    - DELETE /chats/{chat_id}: soft delete
    - GET    /presence/{user_id}: online status

Realtime protocol (one JSON object per frame, ``{"event", "data"}``):
    client -> server: joinChat, leaveChat, sendMessage, createChat
    server -> client: connected, newMessage, messagesRead, leftChat,
                      chatNotification, chatCreated, userStatus, error
"""
import json
import logging

from fastapi import APIRouter, Depends, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from marketchat.auth.dependencies import get_current_user

from .concurrency import run_blocking
from .handlers import RealtimeHandlers
from .hub import get_hub
from .schemas import AddMessageRequest, CreateChatRequest, Identity, ServerEvent
from .views import message_view

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """Realtime chat connection for one client.

    Protocol Flow:
        1. Client connects with ``?token=<jwt>`` (or Authorization header)
           → refused with close code 1008 if authentication fails
           → Server sends: {event: "connected", data: {user, onlineUsers}}
           → Server broadcasts: {event: "userStatus", data: {userId, status: "online"}}
        2. Client sends: {event: "joinChat", data: chatId}
           → Server sends: {event: "messagesRead", data: {chatId}}
        3. Client sends: {event: "sendMessage", data: {chatId, content}}
           → Room receives: {event: "newMessage", data: {chatId, message}}
           → Absent participants receive: {event: "chatNotification", ...}
        4. Client sends: {event: "createChat", data: {participantId, productId?, initialMessage?}}
           → Both parties receive: {event: "chatCreated", data: {chat}}
        5. On disconnect or connection loss
           → Server broadcasts: {event: "userStatus", data: {userId, status: "offline"}}
    """
    hub = get_hub()
    conn = await hub.gateway.open(websocket)
    if conn is None:
        return

    handlers = RealtimeHandlers(hub)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await conn.emit(ServerEvent.ERROR.value, {"message": "Malformed event"})
                continue
            await handlers.dispatch(conn, frame)
    except WebSocketDisconnect:
        logger.debug(f"[WS] Connection {conn.id} closed by client")
    except Exception as exc:
        # Transport failure counts as a disconnect.
        logger.warning(f"[WS] Connection {conn.id} lost: {exc}")
    finally:
        await hub.gateway.close(conn)


@router.get("/chats")
async def list_chats(user: Identity = Depends(get_current_user)) -> JSONResponse:
    """List the caller's active chats, most recent activity first."""
    chats = await run_blocking(get_hub().lifecycle.list_user_chats, user)
    return JSONResponse({
        "status": "success",
        "results": len(chats),
        "data": {"chats": [c.model_dump(mode="json") for c in chats]},
    })


@router.get("/chats/{chat_id}")
async def get_chat(chat_id: str, user: Identity = Depends(get_current_user)) -> JSONResponse:
    chat = await run_blocking(get_hub().lifecycle.get_chat, user, chat_id)
    return JSONResponse({"status": "success", "data": {"chat": chat.model_dump(mode="json")}})


@router.post("/chats")
async def create_chat(
    body: CreateChatRequest, user: Identity = Depends(get_current_user)
) -> JSONResponse:
    """Get or create a chat with ``recipientId``.

    Returns:
        201 with the new chat, or 200 with the existing one.
    """
    view, created = await get_hub().lifecycle.create_and_notify(
        user,
        body.recipientId,
        product_id=body.productId,
        order_id=body.orderId,
        initial_message=body.initialMessage,
    )
    return JSONResponse(
        {"status": "success", "data": {"chat": view.model_dump(mode="json")}},
        status_code=201 if created else 200,
    )


@router.post("/chats/{chat_id}/messages", status_code=201)
async def add_message(
    chat_id: str, body: AddMessageRequest, user: Identity = Depends(get_current_user)
) -> JSONResponse:
    """Append a message; live room members and absent participants are notified."""
    message = await get_hub().dispatcher.post(user, chat_id, body.content)
    return JSONResponse(
        {"status": "success", "data": {"message": message_view(message, user.name).model_dump(mode="json")}},
        status_code=201,
    )


@router.patch("/chats/{chat_id}/read")
async def mark_chat_read(chat_id: str, user: Identity = Depends(get_current_user)) -> JSONResponse:
    updated = await run_blocking(get_hub().lifecycle.mark_chat_read, user, chat_id)
    return JSONResponse({"status": "success", "data": {"updated": updated}})


@router.delete("/chats/{chat_id}", status_code=204)
async def delete_chat(chat_id: str, user: Identity = Depends(get_current_user)) -> Response:
    await run_blocking(get_hub().lifecycle.deactivate_chat, user, chat_id)
    return Response(status_code=204)


@router.get("/presence/{user_id}")
async def presence_status(user_id: str, user: Identity = Depends(get_current_user)) -> dict:
    return {"userId": user_id, "online": get_hub().presence.is_online(user_id)}
