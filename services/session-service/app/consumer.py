import logging
from datetime import datetime, timedelta, timezone

import aio_pika
from dateutil import parser
from sqlalchemy import select

from shared.events import parse_event
from shared.idempotency import mark_processed, release

from .availability import find_open_slot, scheduled_end
from .config import EXTENSION_WINDOW_MINUTES, SERVICE_NAME
from .db import SessionLocal
from .models import Booking
from .rabbitmq import connect, declare_exchange
from .redis_client import redis_client

logger = logging.getLogger(__name__)

QUEUE_NAME = "session_service_extension_grants"
ROUTING_KEYS = ["extension.granted"]


async def apply_extension_granted(db, data: dict) -> bool:
    """
    Append the granted block to the booking and take the giver's slot.
    Returns False when there is nothing to apply.
    """
    booking_id = data.get("booking_id")
    if not booking_id:
        return False

    res = await db.execute(select(Booking).where(Booking.booking_id == booking_id))
    booking = res.scalar_one_or_none()
    if not booking or booking.ended_at is not None:
        return False

    minutes = int(data.get("minutes") or EXTENSION_WINDOW_MINUTES)
    window_start = scheduled_end(booking)
    slot = await find_open_slot(db, booking.giver_id, window_start, window_start + timedelta(minutes=minutes))
    if slot:
        slot.is_booked = True
    else:
        logger.warning("booking %s: no open slot left to reserve for the extension", booking_id)

    booking.extension_minutes = (booking.extension_minutes or 0) + minutes
    await db.commit()
    return True


async def handle_payload(payload: dict, session_factory=SessionLocal, redis=redis_client) -> bool:
    event_id = payload["event_id"]
    if payload.get("event_type") not in ROUTING_KEYS:
        return False

    # at-least-once delivery: first claim wins
    if not await mark_processed(redis, SERVICE_NAME, event_id):
        logger.info("skipping redelivered event %s", event_id)
        return False

    try:
        async with session_factory() as db:
            return await apply_extension_granted(db, payload.get("data") or {})
    except Exception:
        await release(redis, SERVICE_NAME, event_id)
        raise


async def handle_message(message: aio_pika.IncomingMessage):
    payload = None
    try:
        # a failed apply goes back on the queue once; failing again on redelivery drops it
        async with message.process(requeue=True, reject_on_redelivered=True):
            payload = parse_event(message.body)
            if not payload:
                return
            applied = await handle_payload(payload)
    except Exception:
        logger.exception(
            "failed to apply %s (redelivered=%s)",
            payload.get("event_type") if payload else None, message.redelivered,
        )
        return

    if applied:
        lag = (datetime.now(timezone.utc) - parser.isoparse(payload["occurred_at"])).total_seconds()
        logger.info(
            "applied %s for booking %s (%.1fs after publish)",
            payload["event_type"], payload["data"].get("booking_id"), lag,
        )


async def start_consumer():
    conn = await connect()
    channel = await conn.channel()
    await channel.set_qos(prefetch_count=50)

    exchange = await declare_exchange(channel)
    queue = await channel.declare_queue(QUEUE_NAME, durable=True)
    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(handle_message)
    logger.info("[%s] extension consumer started", SERVICE_NAME)
    return conn
