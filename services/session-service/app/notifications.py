"""
Live extension events for the two participants of a booking.

Each WebSocket gets its own exclusive queue on the session exchange. Delivery
is at-least-once, so the relay drops event ids it already forwarded.
"""

import asyncio
import logging
from collections import deque

from fastapi import WebSocket, WebSocketDisconnect

from shared.events import parse_event

from .rabbitmq import connect, declare_exchange

logger = logging.getLogger(__name__)

RELAYED_EVENTS = [
    "extension.requested",
    "extension.granted",
    "extension.declined",
    "session.finalized",
]


class EventRelay:
    def __init__(self, booking_id: str, max_seen: int = 256):
        self.booking_id = booking_id
        self._seen: set[str] = set()
        self._order: deque[str] = deque()
        self.max_seen = max_seen

    def accept(self, payload: dict) -> bool:
        if payload.get("event_type") not in RELAYED_EVENTS:
            return False
        if (payload.get("data") or {}).get("booking_id") != self.booking_id:
            return False

        event_id = payload["event_id"]
        if event_id in self._seen:
            return False

        self._seen.add(event_id)
        self._order.append(event_id)
        if len(self._order) > self.max_seen:
            self._seen.discard(self._order.popleft())
        return True


async def _forward(websocket: WebSocket, booking_id: str):
    relay = EventRelay(booking_id)
    conn = await connect()
    async with conn:
        channel = await conn.channel()
        exchange = await declare_exchange(channel)
        queue = await channel.declare_queue(exclusive=True, auto_delete=True)
        for rk in RELAYED_EVENTS:
            await queue.bind(exchange, routing_key=rk)

        async with queue.iterator() as messages:
            async for message in messages:
                async with message.process():
                    payload = parse_event(message.body)
                    if payload and relay.accept(payload):
                        await websocket.send_json(payload)


async def _drain(websocket: WebSocket):
    # clients only listen; reading is how a disconnect is noticed
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def stream_booking_events(websocket: WebSocket, booking_id: str):
    forward = asyncio.create_task(_forward(websocket, booking_id))
    drain = asyncio.create_task(_drain(websocket))
    done, pending = await asyncio.wait({forward, drain}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    for task in done:
        if task is forward and not task.cancelled() and task.exception():
            logger.error("event relay for booking %s stopped: %s", booking_id, task.exception())
