from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import as_utc

from .config import EXTENSION_WINDOW_MINUTES
from .models import Booking, GiverAvailabilitySlot


def scheduled_end(booking: Booking) -> datetime:
    minutes = (booking.duration_minutes or 0) + (booking.extension_minutes or 0)
    return as_utc(booking.scheduled_time) + timedelta(minutes=minutes)


def extension_window(booking: Booking, window_minutes: int = EXTENSION_WINDOW_MINUTES) -> tuple[datetime, datetime]:
    start = scheduled_end(booking)
    return start, start + timedelta(minutes=window_minutes)


async def find_open_slot(
    db: AsyncSession,
    giver_id: str,
    window_start: datetime,
    window_end: datetime,
) -> GiverAvailabilitySlot | None:
    """
    First open, unbooked slot of the giver starting inside the window.
    """
    res = await db.execute(
        select(GiverAvailabilitySlot)
        .where(
            GiverAvailabilitySlot.giver_id == giver_id,
            GiverAvailabilitySlot.start_time >= window_start,
            GiverAvailabilitySlot.start_time <= window_end,
            GiverAvailabilitySlot.is_available.is_(True),
            GiverAvailabilitySlot.is_booked.is_(False),
        )
        .order_by(GiverAvailabilitySlot.start_time)
        .limit(1)
    )
    return res.scalar_one_or_none()
