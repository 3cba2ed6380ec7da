import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import PaymentError
from .models import Profile

logger = logging.getLogger(__name__)

NOT_ONBOARDED = {
    "onboarding_complete": False,
    "details_submitted": False,
    "charges_enabled": False,
    "payouts_enabled": False,
}


async def account_status(db: AsyncSession, payments, user_id: str, metrics=None) -> dict:
    """
    Onboarding state of the user's connected payout account. Any failure
    reads as "not onboarded" rather than an error.
    """
    res = await db.execute(select(Profile.stripe_account_id).where(Profile.user_id == user_id))
    account_id = res.scalar_one_or_none()
    if not account_id or not payments:
        return dict(NOT_ONBOARDED)

    try:
        account = await payments.get_account(account_id)
    except PaymentError as e:
        logger.error("account status for %s (%s) failed: %s", user_id, account_id, e)
        if metrics:
            await metrics.incr("account_status_failures")
        return dict(NOT_ONBOARDED)

    status = {
        "details_submitted": bool(account.get("details_submitted")),
        "charges_enabled": bool(account.get("charges_enabled")),
        "payouts_enabled": bool(account.get("payouts_enabled")),
    }
    status["onboarding_complete"] = all(status.values())

    try:
        await db.execute(
            update(Profile)
            .where(Profile.user_id == user_id)
            .values(stripe_onboarding_complete=status["onboarding_complete"])
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("failed to store onboarding state for %s", user_id)

    return status
