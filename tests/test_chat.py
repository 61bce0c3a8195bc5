"""Per-booking chat rooms and messages."""

import pytest

from src.domain.enums import MessageType
from src.infrastructure.errors import StoreError
from src.services.chat import ChatService


async def _room(chat, booking_id="B1", customer="cust-1", driver="drv-1"):
    return await chat.ensure_chat_room(booking_id, customer, "Liza", driver, "Juan")


class TestChatRoom:
    @pytest.mark.asyncio
    async def test_one_room_per_booking(self, store):
        chat = ChatService(store)

        first = await _room(chat)
        second = await _room(chat)

        assert first == second
        assert len(await store.read("chatRooms")) == 1
        room = await chat.get_room("B1")
        assert room.customer_id == "cust-1" and room.driver_id == "drv-1"
        assert room.is_active

    @pytest.mark.asyncio
    async def test_welcome_message_is_system(self, store):
        chat = ChatService(store)
        await _room(chat)
        messages = await chat.messages("B1")
        assert len(messages) == 1
        assert messages[0].message_type == MessageType.SYSTEM
        assert messages[0].receiver_id == "all"

    @pytest.mark.asyncio
    async def test_rooms_for_user(self, store):
        chat = ChatService(store)
        await _room(chat, "B1")
        await _room(chat, "B2", driver="drv-2")
        await _room(chat, "B3", customer="cust-9", driver="drv-2")

        assert {r.booking_id for r in await chat.rooms_for_user("cust-1")} == {"B1", "B2"}
        assert {r.booking_id for r in await chat.rooms_for_user("drv-2")} == {"B2", "B3"}
        assert await chat.rooms_for_user("nobody") == []

    @pytest.mark.asyncio
    async def test_missing_room(self, store):
        assert await ChatService(store).get_room("B404") is None


class TestMessages:
    @pytest.mark.asyncio
    async def test_messages_in_send_order_and_room_summary(self, store):
        chat = ChatService(store)
        await _room(chat)

        assert await chat.send_message("B1", "cust-1", "Liza", "drv-1", "Nasaan ka na?")
        assert await chat.send_message("B1", "drv-1", "Juan", "cust-1", "Malapit na po")

        texts = [m.message for m in await chat.messages("B1")]
        assert texts[1:] == ["Nasaan ka na?", "Malapit na po"]
        room = await chat.get_room("B1")
        assert room.last_message == "Malapit na po"

    @pytest.mark.asyncio
    async def test_send_without_room(self, store):
        chat = ChatService(store)
        assert await chat.send_message("B1", "cust-1", "Liza", "drv-1", "hello")
        assert [m.message for m in await chat.messages("B1")] == ["hello"]
        assert await store.read("chatRooms") is None

    @pytest.mark.asyncio
    async def test_text_message_notifies_system_message_does_not(self, store):
        chat = ChatService(store)
        await _room(chat)
        assert await store.read("notifications") is None

        await chat.send_message("B1", "cust-1", "Liza", "drv-1", "hi")
        events = list((await store.read("notifications")).values())
        assert [e["type"] for e in events] == ["CHAT_MESSAGE"]

    @pytest.mark.asyncio
    async def test_mark_read_only_messages_for_reader(self, store):
        chat = ChatService(store)
        await chat.send_message("B1", "drv-1", "Juan", "cust-1", "one")
        await chat.send_message("B1", "drv-1", "Juan", "cust-1", "two")
        await chat.send_message("B1", "cust-1", "Liza", "drv-1", "three")

        assert await chat.mark_read("B1", "cust-1") == 2
        assert await chat.mark_read("B1", "cust-1") == 0
        unread = [m.message for m in await chat.messages("B1") if not m.is_read]
        assert unread == ["three"]

    @pytest.mark.asyncio
    async def test_store_failure_returns_false(self, store, monkeypatch):
        async def broken(values):
            raise StoreError("timeout")

        monkeypatch.setattr(store, "update", broken)
        assert await ChatService(store).send_message("B1", "a", "A", "b", "hi") is False
