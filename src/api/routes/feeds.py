"""
Real-time feeds over WebSocket
==============================

Every message is the full current list (or object) for the feed, sent once
on connect and again after every relevant store change.

WS /api/v1/feeds/active                       -- unfinished bookings
WS /api/v1/feeds/dispatch                     -- PENDING / ACCEPTED bookings
WS /api/v1/feeds/passenger/{customer_id}      -- a passenger's bookings (``?history=true``)
WS /api/v1/feeds/driver/{driver_id}           -- a driver's trips + PENDING when online
WS /api/v1/feeds/queue                        -- driver queue in arrival order
WS /api/v1/feeds/available-drivers            -- drivers online and available
WS /api/v1/feeds/emergency-alerts             -- open emergency alerts
WS /api/v1/feeds/chat/{booking_id}/messages   -- chat messages
WS /api/v1/feeds/chat/{booking_id}/room       -- chat room summary (``null`` until created)
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from src.api.dependencies import get_feed
from src.api.schemas import (
    AvailableDriverResponse,
    BookingResponse,
    ChatMessageResponse,
    ChatRoomResponse,
    EmergencyAlertResponse,
    QueueEntryResponse,
)
from src.services.feeds import BookingFeed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/feeds", tags=["feeds"])


def _bookings(bookings) -> list[dict]:
    return [BookingResponse.model_validate(b).model_dump(mode="json") for b in bookings]


def _queue(entries) -> list[dict]:
    return [QueueEntryResponse.from_entry(e).model_dump(mode="json") for e in entries]


def _messages(messages) -> list[dict]:
    return [ChatMessageResponse.model_validate(m).model_dump(mode="json") for m in messages]


def _drivers(drivers) -> list[dict]:
    return [AvailableDriverResponse.model_validate(d).model_dump(mode="json") for d in drivers]


def _alerts(alerts) -> list[dict]:
    return [EmergencyAlertResponse.model_validate(a).model_dump(mode="json") for a in alerts]


def _room(room) -> Any:
    return ChatRoomResponse.model_validate(room).model_dump(mode="json") if room else None


async def _stream(websocket: WebSocket, source: AsyncIterator, render: Callable[[Any], Any]) -> None:
    """Pump *source* into the socket until either side ends; always closes the feed."""
    await websocket.accept()
    try:
        async for item in source:
            await websocket.send_json(render(item))
    except WebSocketDisconnect:
        logger.debug("Feed client disconnected")
    finally:
        await source.aclose()
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()


@router.websocket("/active")
async def active_feed(websocket: WebSocket, feed: BookingFeed = Depends(get_feed)):
    await _stream(websocket, feed.active_bookings_feed(), _bookings)


@router.websocket("/dispatch")
async def dispatch_feed(websocket: WebSocket, feed: BookingFeed = Depends(get_feed)):
    await _stream(websocket, feed.dispatch_feed(), _bookings)


@router.websocket("/passenger/{customer_id}")
async def passenger_feed(
    websocket: WebSocket,
    customer_id: str,
    history: bool = False,
    feed: BookingFeed = Depends(get_feed),
):
    await _stream(websocket, feed.passenger_feed(customer_id, history), _bookings)


@router.websocket("/driver/{driver_id}")
async def driver_feed(websocket: WebSocket, driver_id: str, feed: BookingFeed = Depends(get_feed)):
    await _stream(websocket, feed.driver_feed(driver_id), _bookings)


@router.websocket("/queue")
async def queue_feed(websocket: WebSocket, feed: BookingFeed = Depends(get_feed)):
    await _stream(websocket, feed.queue_feed(), _queue)


@router.websocket("/available-drivers")
async def available_drivers_feed(websocket: WebSocket, feed: BookingFeed = Depends(get_feed)):
    await _stream(websocket, feed.available_drivers_feed(), _drivers)


@router.websocket("/emergency-alerts")
async def emergency_alerts_feed(websocket: WebSocket, feed: BookingFeed = Depends(get_feed)):
    await _stream(websocket, feed.emergency_alerts_feed(), _alerts)


@router.websocket("/chat/{booking_id}/messages")
async def chat_messages_feed(websocket: WebSocket, booking_id: str, feed: BookingFeed = Depends(get_feed)):
    await _stream(websocket, feed.chat_messages_feed(booking_id), _messages)


@router.websocket("/chat/{booking_id}/room")
async def chat_room_feed(websocket: WebSocket, booking_id: str, feed: BookingFeed = Depends(get_feed)):
    await _stream(websocket, feed.chat_room_feed(booking_id), _room)
