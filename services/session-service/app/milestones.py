import logging

from sqlalchemy.ext.asyncio import AsyncSession

from .models import Milestone

logger = logging.getLogger(__name__)


async def record_milestone(
    db: AsyncSession,
    booking_id: str,
    event_type: str,
    user_id: str | None,
    details: dict | None = None,
    metrics=None,
) -> bool:
    """
    Append an audit event. Best effort: failures are logged and counted,
    never raised. Call it only after the authoritative write has committed,
    since a failure rolls the session back.
    """
    try:
        db.add(Milestone(booking_id=booking_id, event_type=event_type, user_id=user_id, details=details))
        await db.commit()
        return True
    except Exception:
        await db.rollback()
        logger.exception("failed to record milestone %s for booking %s", event_type, booking_id)
        if metrics:
            await metrics.incr("milestone_failures")
        return False
