"""
Chat endpoints
==============

GET  /api/v1/chat/rooms?user_id=...              -- rooms of a customer or driver
GET  /api/v1/chat/{booking_id}/room              -- the booking's room
GET  /api/v1/chat/{booking_id}/messages          -- messages, oldest first
POST /api/v1/chat/{booking_id}/messages          -- send a message
POST /api/v1/chat/{booking_id}/read              -- mark messages read
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from src.api.dependencies import get_chat
from src.api.middleware import limiter
from src.api.schemas import (
    ChatMessageRequest,
    ChatMessageResponse,
    ChatRoomResponse,
    MarkReadRequest,
    MarkReadResponse,
    OperationResponse,
)
from src.config import settings
from src.services.chat import ChatService

router = APIRouter(prefix="/chat", tags=["chat"])


@router.get("/rooms", response_model=list[ChatRoomResponse], summary="Chat rooms of a user")
@limiter.limit(settings.rate_limit)
async def rooms_for_user(
    request: Request,
    user_id: str,
    chat: ChatService = Depends(get_chat),
):
    return await chat.rooms_for_user(user_id)


@router.get("/{booking_id}/room", response_model=ChatRoomResponse, summary="Room of a booking")
@limiter.limit(settings.rate_limit)
async def get_room(
    request: Request,
    booking_id: str,
    chat: ChatService = Depends(get_chat),
):
    room = await chat.get_room(booking_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Chat room not found")
    return room


@router.get(
    "/{booking_id}/messages",
    response_model=list[ChatMessageResponse],
    summary="Messages of a booking",
)
@limiter.limit(settings.rate_limit)
async def list_messages(
    request: Request,
    booking_id: str,
    chat: ChatService = Depends(get_chat),
):
    return await chat.messages(booking_id)


@router.post(
    "/{booking_id}/messages",
    status_code=201,
    response_model=OperationResponse,
    summary="Send a message",
)
@limiter.limit(settings.rate_limit)
async def send_message(
    request: Request,
    booking_id: str,
    body: ChatMessageRequest,
    chat: ChatService = Depends(get_chat),
):
    ok = await chat.send_message(
        booking_id=booking_id,
        sender_id=body.sender_id,
        sender_name=body.sender_name,
        receiver_id=body.receiver_id,
        message=body.message,
        message_type=body.message_type,
    )
    if not ok:
        raise HTTPException(status_code=503, detail="Message not sent, retry")
    return OperationResponse(ok=True)


@router.post("/{booking_id}/read", response_model=MarkReadResponse, summary="Mark messages read")
@limiter.limit(settings.rate_limit)
async def mark_read(
    request: Request,
    booking_id: str,
    body: MarkReadRequest,
    chat: ChatService = Depends(get_chat),
):
    return MarkReadResponse(marked=await chat.mark_read(booking_id, body.reader_id))
