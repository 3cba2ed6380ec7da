"""
Server-authoritative session clock.

The phase is a pure function of the booking's scheduled start and the current
time; nothing about it is stored except a best-effort projection in
session_states that clients may read or subscribe to.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import as_utc, upsert_for

from .errors import BookingNotFound
from .models import Booking, SessionState
from .schemas import Phase

logger = logging.getLogger(__name__)

# (phase, starts at, ends at, giver may speak), cumulative seconds
PHASE_SCHEDULE = (
    (Phase.TRANSMISSION, 0, 8 * 60, False),
    (Phase.REFLECTION, 8 * 60, 16 * 60, True),
    (Phase.VALIDATION, 16 * 60, 20 * 60, True),
    (Phase.EMERGENCE, 20 * 60, 25 * 60, True),
)

SESSION_TOTAL_SECONDS = PHASE_SCHEDULE[-1][2]

_STARTED_AT_COLUMNS = {
    Phase.TRANSMISSION: "transmission_started_at",
    Phase.REFLECTION: "reflection_started_at",
    Phase.VALIDATION: "validation_started_at",
    Phase.EMERGENCE: "emergence_started_at",
}


@dataclass(frozen=True)
class ClockReading:
    phase: Phase
    giver_can_speak: bool
    seconds_remaining_in_phase: int
    total_elapsed_seconds: int

    def as_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "giver_can_speak": self.giver_can_speak,
            "seconds_remaining_in_phase": self.seconds_remaining_in_phase,
            "total_elapsed_seconds": self.total_elapsed_seconds,
        }


def elapsed_seconds(start: datetime, now: datetime) -> int:
    return math.floor((as_utc(now) - as_utc(start)).total_seconds())


def read_clock(elapsed: int) -> ClockReading:
    if elapsed < 0:
        # early poll or clock skew: hold at the top of transmission
        phase, start, end, can_speak = PHASE_SCHEDULE[0]
        return ClockReading(phase, can_speak, end - start, elapsed)

    for phase, start, end, can_speak in PHASE_SCHEDULE:
        if elapsed < end:
            return ClockReading(phase, can_speak, max(0, end - elapsed), elapsed)

    return ClockReading(Phase.ENDED, True, 0, elapsed)


def phase_clock(scheduled_time: datetime, now: datetime) -> ClockReading:
    return read_clock(elapsed_seconds(scheduled_time, now))


def session_seconds_remaining(elapsed: int) -> int:
    """Seconds left in the whole session (not just the current phase)."""
    if elapsed < 0:
        return SESSION_TOTAL_SECONDS
    return max(0, SESSION_TOTAL_SECONDS - elapsed)


def phase_started_at(scheduled_time: datetime) -> dict[Phase, datetime]:
    base = as_utc(scheduled_time)
    return {phase: base + timedelta(seconds=start) for phase, start, _, _ in PHASE_SCHEDULE}


async def upsert_projection(
    db: AsyncSession,
    booking: Booking,
    reading: ClockReading,
    now: datetime,
) -> None:
    """
    Last computed wins. Never touches the extension fields, and never
    rewrites a projection that settlement already closed.
    """
    values = {
        "current_phase": reading.phase.value,
        "giver_can_speak": reading.giver_can_speak,
        "updated_at": now,
    }
    for phase, started in phase_started_at(booking.scheduled_time).items():
        values[_STARTED_AT_COLUMNS[phase]] = started

    table = SessionState.__table__
    stmt = upsert_for(db, table).values(booking_id=booking.booking_id, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.booking_id],
        set_=values,
        where=table.c.end_reason.is_(None),
    )
    await db.execute(stmt)
    await db.commit()


async def get_session_state(
    db: AsyncSession,
    booking_id: str,
    now: datetime | None = None,
    metrics=None,
) -> ClockReading:
    now = now or datetime.now(timezone.utc)

    res = await db.execute(select(Booking).where(Booking.booking_id == booking_id))
    booking = res.scalar_one_or_none()
    if not booking:
        raise BookingNotFound()

    reading = phase_clock(booking.scheduled_time, now)
    logger.debug("booking %s: elapsed %ss -> %s", booking_id, reading.total_elapsed_seconds, reading.phase.value)

    try:
        await upsert_projection(db, booking, reading, now)
    except Exception:
        await db.rollback()
        logger.exception("failed to upsert session_states for booking %s", booking_id)
        if metrics:
            await metrics.incr("projection_write_failures")

    return reading
