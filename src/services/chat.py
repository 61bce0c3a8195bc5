"""
Per-booking chat
================

* One ``ChatRoom`` summary per booking (``chatRooms/{key}``), created lazily
  when the trip starts.  "Find by bookingId before creating" keeps it to at
  most one room per booking.
* An append-only message log per booking (``chatMessages/{bookingId}``),
  read back ordered by timestamp.

Sending is fire-and-forget relative to the booking: ``send_message`` returns
``False`` on failure and never raises, so a chat outage cannot block or roll
back a status transition.
"""

from __future__ import annotations

import logging
from typing import Optional

from src.domain.clock import now_ms
from src.domain.entities import ChatMessage, ChatRoom
from src.domain.enums import MessageType, NotificationKind
from src.domain.normalization import chat_message_to_store, chat_room_to_store
from src.infrastructure.errors import StoreError
from src.infrastructure.repositories import CHAT_ROOMS, ChatRepository
from src.infrastructure.tree_store import TreeStore

from .notifications import NotificationEmitter

logger = logging.getLogger(__name__)

SYSTEM_SENDER_ID = "system"
SYSTEM_SENDER_NAME = "TODA System"


class ChatService:
    def __init__(self, store: TreeStore, notifications: Optional[NotificationEmitter] = None):
        self.store = store
        self.repo = ChatRepository(store)
        self.notifications = notifications or NotificationEmitter(store)

    async def ensure_chat_room(
        self,
        booking_id: str,
        customer_id: str,
        customer_name: str,
        driver_id: str,
        driver_name: str,
    ) -> str:
        """Return the booking's room id, creating the room (and a welcome message) if absent."""
        existing = await self.repo.room_for_booking(booking_id)
        if existing is not None:
            return existing.id

        room_id = await self.store.push(CHAT_ROOMS)
        created = now_ms()
        room = ChatRoom(
            id=room_id,
            booking_id=booking_id,
            customer_id=customer_id,
            customer_name=customer_name,
            driver_id=driver_id,
            driver_name=driver_name,
            created_at=created,
            last_message="Chat room created",
            last_message_time=created,
            is_active=True,
        )
        await self.store.write(self.repo.room_path(room_id), chat_room_to_store(room))
        logger.info("Created chat room %s for booking %s", room_id, booking_id)

        await self.send_message(
            booking_id=booking_id,
            sender_id=SYSTEM_SENDER_ID,
            sender_name=SYSTEM_SENDER_NAME,
            receiver_id="all",
            message=(
                f"Chat started between {customer_name or 'passenger'} and "
                f"{driver_name or 'driver'}. Have a safe trip!"
            ),
            message_type=MessageType.SYSTEM,
        )
        return room_id

    async def send_message(
        self,
        booking_id: str,
        sender_id: str,
        sender_name: str,
        receiver_id: str,
        message: str,
        message_type: MessageType = MessageType.TEXT,
    ) -> bool:
        try:
            message_id = await self.store.push(self.repo.messages_path(booking_id))
            sent_at = now_ms()
            record = ChatMessage(
                id=message_id,
                booking_id=booking_id,
                sender_id=sender_id,
                sender_name=sender_name,
                receiver_id=receiver_id,
                message=message,
                timestamp=sent_at,
                message_type=message_type,
                is_read=False,
            )
            updates = {
                self.repo.messages_path(booking_id, message_id): chat_message_to_store(record)
            }
            room = await self.repo.room_for_booking(booking_id)
            if room is not None:
                updates[self.repo.room_path(room.id, "lastMessage")] = message
                updates[self.repo.room_path(room.id, "lastMessageTime")] = sent_at
            await self.store.update(updates)
        except StoreError as exc:
            logger.warning("Chat message for booking %s not sent: %s", booking_id, exc)
            return False

        if message_type != MessageType.SYSTEM:
            await self.notifications.emit(
                NotificationKind.CHAT_MESSAGE,
                bookingId=booking_id,
                senderId=sender_id,
                receiverId=receiver_id,
            )
        return True

    async def messages(self, booking_id: str) -> list[ChatMessage]:
        return await self.repo.messages(booking_id)

    async def get_room(self, booking_id: str) -> Optional[ChatRoom]:
        return await self.repo.room_for_booking(booking_id)

    async def mark_read(self, booking_id: str, reader_id: str) -> int:
        """Mark messages addressed to *reader_id* (or to everyone) as read."""
        updates = {
            self.repo.messages_path(booking_id, m.id, "isRead"): True
            for m in await self.repo.messages(booking_id)
            if not m.is_read and m.sender_id != reader_id and m.receiver_id in (reader_id, "all")
        }
        if updates:
            await self.store.update(updates)
        return len(updates)

    async def rooms_for_user(self, user_id: str) -> list[ChatRoom]:
        rooms = [
            r for r in await self.repo.rooms() if user_id in (r.customer_id, r.driver_id)
        ]
        return sorted(rooms, key=lambda r: r.last_message_time, reverse=True)
