"""
Settlement of a finished booking: payout, refund and credits.

Payout is all-or-nothing by end reason; nothing is pro-rated by elapsed time.
Refunds and credits are best effort (logged, counted, recorded at their
computed amounts). The booking row is the single source of truth that
settlement ran, and it is claimed with a guarded update up front so concurrent
or repeated finalize calls cannot issue side effects twice.

A claim that never reaches the authoritative write is either released on the
way out or, if the worker died, taken over once it is older than the lease.
Refund and credits are idempotent (Stripe idempotency key, unique credit per
booking and reason), so a takeover may safely run them again.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import upsert_for
from shared.events import build_event, to_json

from .config import SETTLEMENT_CLAIM_LEASE_SECONDS
from .errors import AlreadySettled, BookingNotFound, PaymentError, SettlementWriteFailed
from .milestones import record_milestone
from .models import Booking, Credit, SessionState
from .phase_clock import elapsed_seconds
from .schemas import EndReason, Phase

logger = logging.getLogger(__name__)

COMPLETION_REASONS = frozenset({EndReason.COMPLETED, EndReason.RECEIVER_END_COMPLETE})
FULL_PAYOUT_REASONS = COMPLETION_REASONS | {EndReason.GIVER_SAFETY_EXIT, EndReason.TECHNICAL_FAILURE}
FULL_REFUND_REASONS = frozenset({EndReason.RECEIVER_NO_SHOW, EndReason.GIVER_NO_SHOW})

SAFETY_CREDIT_REASON = "safety_exit_compensation"
LATE_JOIN_CREDIT_REASON = "late_join"

PAYOUT_PENDING = "pending"
PAYOUT_PROCESSING = "processing"
PAYOUT_COMPLETED = "completed"


@dataclass(frozen=True)
class Outcome:
    payout_net_cents: int
    refund_gross_cents: int
    credits: tuple[tuple[str, int], ...] = field(default_factory=tuple)

    @property
    def credit_amount_cents(self) -> int:
        return sum(amount for _, amount in self.credits)


def settlement_policy(
    end_reason: EndReason,
    gross_amount_cents: int,
    platform_fee_cents: int,
    net_payout_cents: int,
    seeker_credit_earned: bool = False,
) -> Outcome:
    end_reason = EndReason(end_reason)

    if end_reason in FULL_PAYOUT_REASONS:
        payout, refund = net_payout_cents, 0
    elif end_reason in FULL_REFUND_REASONS:
        payout, refund = 0, gross_amount_cents
    else:
        raise ValueError(f"Unknown end_reason: {end_reason}")

    credits = []
    if end_reason == EndReason.GIVER_SAFETY_EXIT:
        credits.append((SAFETY_CREDIT_REASON, platform_fee_cents))
    # late giver: layered on top of the table, completions only
    if seeker_credit_earned and end_reason in COMPLETION_REASONS:
        credits.append((LATE_JOIN_CREDIT_REASON, platform_fee_cents))

    return Outcome(payout, refund, tuple((r, a) for r, a in credits if a > 0))


class SettlementEngine:
    def __init__(
        self,
        db: AsyncSession,
        payments=None,
        publisher=None,
        metrics=None,
        claim_lease_seconds: int = SETTLEMENT_CLAIM_LEASE_SECONDS,
    ):
        self.db = db
        self.payments = payments
        self.publisher = publisher
        self.metrics = metrics
        self.claim_lease_seconds = claim_lease_seconds

    async def _count(self, name: str):
        if self.metrics:
            await self.metrics.incr(name)

    async def _claim(self, booking_id: str, now: datetime) -> None:
        stale_before = now - timedelta(seconds=self.claim_lease_seconds)
        res = await self.db.execute(
            update(Booking)
            .where(
                Booking.booking_id == booking_id,
                Booking.ended_at.is_(None),
                or_(
                    Booking.payout_status.is_(None),
                    Booking.payout_status == PAYOUT_PENDING,
                    # abandoned by a worker that died or was cancelled mid-settlement
                    and_(
                        Booking.payout_status == PAYOUT_PROCESSING,
                        or_(Booking.claimed_at.is_(None), Booking.claimed_at <= stale_before),
                    ),
                ),
            )
            .values(payout_status=PAYOUT_PROCESSING, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            await self.db.rollback()
            raise AlreadySettled()
        await self.db.commit()

    async def _release(self, booking_id: str) -> None:
        try:
            await self.db.execute(
                update(Booking)
                .where(Booking.booking_id == booking_id, Booking.payout_status == PAYOUT_PROCESSING)
                .values(payout_status=PAYOUT_PENDING, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("failed to release settlement claim on booking %s", booking_id)

    async def _refund(self, booking_id: str, payment_reference: str | None, amount_cents: int) -> None:
        if not payment_reference:
            logger.error("booking %s: no payment reference, refund of %s not issued", booking_id, amount_cents)
            await self._count("refund_failures")
            return
        if not self.payments:
            logger.error("booking %s: payments unavailable, refund of %s not issued", booking_id, amount_cents)
            await self._count("refund_failures")
            return
        try:
            await self.payments.create_refund(
                payment_reference,
                amount_cents,
                idempotency_key=f"finalize-{booking_id}-refund",
            )
            logger.info("booking %s: refund of %s created", booking_id, amount_cents)
        except PaymentError as e:
            logger.error("booking %s: refund of %s failed: %s", booking_id, amount_cents, e)
            await self._count("refund_failures")

    async def _issue_credit(self, booking_id: str, user_id: str, reason: str, amount_cents: int) -> None:
        try:
            self.db.add(
                Credit(
                    credit_id=str(uuid.uuid4()),
                    user_id=user_id,
                    amount_cents=amount_cents,
                    reason=reason,
                    source_booking_id=booking_id,
                )
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning("booking %s: %s credit already issued", booking_id, reason)
        except Exception:
            await self.db.rollback()
            logger.exception("booking %s: failed to issue %s credit of %s", booking_id, reason, amount_cents)
            await self._count("credit_failures")

    async def _close_projection(self, booking_id: str, end_reason: EndReason, now: datetime) -> None:
        values = {
            "current_phase": Phase.ENDED.value,
            "giver_can_speak": True,
            "end_reason": end_reason.value,
            "ended_at": now,
            "extension_pending": False,
            "updated_at": now,
        }
        table = SessionState.__table__
        stmt = upsert_for(self.db, table).values(booking_id=booking_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=[table.c.booking_id], set_=values)
        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("failed to close session_states for booking %s", booking_id)
            await self._count("projection_write_failures")

    async def finalize(self, booking_id: str, end_reason: EndReason, now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        end_reason = EndReason(end_reason)

        res = await self.db.execute(
            select(Booking)
            .where(Booking.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = res.scalar_one_or_none()
        if not booking:
            raise BookingNotFound()
        # a processing row is left to _claim, which takes it over once stale
        if booking.ended_at is not None or booking.payout_status == PAYOUT_COMPLETED:
            raise AlreadySettled()

        # plain values: later best-effort rollbacks expire the ORM instance
        receiver_id = booking.receiver_id
        payment_reference = booking.payment_reference
        started = booking.started_at or booking.scheduled_time
        outcome = settlement_policy(
            end_reason,
            booking.gross_amount_cents or 0,
            booking.platform_fee_cents or 0,
            booking.net_payout_cents or 0,
            bool(booking.seeker_credit_earned),
        )
        logger.info(
            "finalizing booking %s (%s): payout=%s refund=%s credit=%s",
            booking_id, end_reason.value, outcome.payout_net_cents,
            outcome.refund_gross_cents, outcome.credit_amount_cents,
        )

        await self._claim(booking_id, now)

        elapsed = elapsed_seconds(started, now)

        try:
            if outcome.refund_gross_cents > 0:
                await self._refund(booking_id, payment_reference, outcome.refund_gross_cents)

            for reason, amount in outcome.credits:
                await self._issue_credit(booking_id, receiver_id, reason, amount)

            res = await self.db.execute(
                update(Booking)
                .where(Booking.booking_id == booking_id, Booking.payout_status == PAYOUT_PROCESSING)
                .values(
                    status="ended",
                    ended_at=now,
                    elapsed_seconds=elapsed,
                    end_reason=end_reason.value,
                    payout_net_cents=outcome.payout_net_cents,
                    refund_gross_cents=outcome.refund_gross_cents,
                    payout_status=PAYOUT_COMPLETED,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise RuntimeError(f"settlement claim on booking {booking_id} was lost")
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.exception("failed to record settlement for booking %s", booking_id)
            await self._release(booking_id)
            raise SettlementWriteFailed(f"Failed to record settlement: {e}")
        except BaseException:
            # cancelled mid-settlement (client disconnect, shutdown)
            await self.db.rollback()
            logger.warning("settlement of booking %s interrupted, releasing claim", booking_id)
            await self._release(booking_id)
            raise

        result = {
            "success": True,
            "payout_net_cents": outcome.payout_net_cents,
            "refund_gross_cents": outcome.refund_gross_cents,
            "credit_amount_cents": outcome.credit_amount_cents,
            "elapsed_seconds": elapsed,
        }

        await self._close_projection(booking_id, end_reason, now)
        await record_milestone(
            self.db, booking_id, "session_finalized", None,
            {"end_reason": end_reason.value, **{k: v for k, v in result.items() if k != "success"}},
            metrics=self.metrics,
        )
        await self._count("settlements_completed")
        if self.publisher:
            event = build_event("session.finalized", {"booking_id": booking_id, "end_reason": end_reason.value, **result})
            await self.publisher.publish("session.finalized", to_json(event))

        return result
