import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app import settlement
from app.errors import AlreadySettled, BookingNotFound, SettlementWriteFailed
from app.models import Booking, Credit, Milestone, SessionState
from app.schemas import EndReason
from app.settlement import Outcome, SettlementEngine, settlement_policy

from .conftest import FakePayments, T0

ENDED_AT = T0 + timedelta(minutes=25)


@pytest.mark.parametrize(
    "end_reason, payout, refund, credit",
    [
        (EndReason.COMPLETED, 4250, 0, 0),
        (EndReason.RECEIVER_END_COMPLETE, 4250, 0, 0),
        (EndReason.GIVER_SAFETY_EXIT, 4250, 0, 750),
        (EndReason.TECHNICAL_FAILURE, 4250, 0, 0),
        (EndReason.RECEIVER_NO_SHOW, 0, 5000, 0),
        (EndReason.GIVER_NO_SHOW, 0, 5000, 0),
    ],
)
def test_settlement_table(end_reason, payout, refund, credit):
    outcome = settlement_policy(end_reason, 5000, 750, 4250)
    assert outcome.payout_net_cents == payout
    assert outcome.refund_gross_cents == refund
    assert outcome.credit_amount_cents == credit


@pytest.mark.parametrize(
    "end_reason, credit",
    [
        (EndReason.COMPLETED, 750),
        (EndReason.RECEIVER_END_COMPLETE, 750),
        (EndReason.GIVER_SAFETY_EXIT, 0),
        (EndReason.RECEIVER_NO_SHOW, 0),
    ],
)
def test_late_join_credit_applies_to_completions(end_reason, credit):
    outcome = settlement_policy(end_reason, 5000, 750, 4250, seeker_credit_earned=True)
    late = [amount for reason, amount in outcome.credits if reason == "late_join"]
    assert sum(late) == credit


def test_unknown_end_reason_is_rejected():
    with pytest.raises(ValueError):
        settlement_policy("walked_out", 5000, 750, 4250)


async def test_safety_exit_pays_giver_and_credits_receiver(db, make_booking, payments, publisher, metrics):
    booking_id = await make_booking()

    result = await SettlementEngine(db, payments, publisher, metrics).finalize(
        booking_id, EndReason.GIVER_SAFETY_EXIT, now=ENDED_AT
    )

    assert result == {
        "success": True,
        "payout_net_cents": 4250,
        "refund_gross_cents": 0,
        "credit_amount_cents": 750,
        "elapsed_seconds": 1500,
    }
    assert payments.refunds == []

    [credit] = (await db.execute(select(Credit).where(Credit.source_booking_id == booking_id))).scalars().all()
    assert credit.user_id == "receiver-1"
    assert credit.amount_cents == 750
    assert credit.reason == "safety_exit_compensation"

    booking = (
        await db.execute(
            select(Booking).where(Booking.booking_id == booking_id).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert booking.status == "ended"
    assert booking.payout_status == "completed"
    assert booking.end_reason == "giver_safety_exit"
    assert booking.payout_net_cents == 4250
    assert booking.refund_gross_cents == 0
    assert booking.elapsed_seconds == 1500

    state = (await db.execute(select(SessionState).where(SessionState.booking_id == booking_id))).scalar_one()
    assert state.current_phase == "ended"
    assert state.end_reason == "giver_safety_exit"

    milestones = (await db.execute(select(Milestone).where(Milestone.booking_id == booking_id))).scalars().all()
    assert [m.event_type for m in milestones] == ["session_finalized"]
    assert milestones[0].details["end_reason"] == "giver_safety_exit"

    [event] = publisher.of("session.finalized")
    assert event["data"]["booking_id"] == booking_id
    assert await metrics.get("settlements_completed") == 1


async def test_no_show_refunds_gross(db, make_booking, payments):
    booking_id = await make_booking()

    result = await SettlementEngine(db, payments).finalize(booking_id, EndReason.RECEIVER_NO_SHOW, now=ENDED_AT)

    assert result["payout_net_cents"] == 0
    assert result["refund_gross_cents"] == 5000
    assert result["credit_amount_cents"] == 0
    assert payments.refunds == [
        {
            "payment_reference": "pi_booking_1",
            "amount_cents": 5000,
            "idempotency_key": f"finalize-{booking_id}-refund",
        }
    ]


async def test_refund_failure_still_settles(db, make_booking, payments, metrics):
    booking_id = await make_booking()
    payments.fail = True

    result = await SettlementEngine(db, payments, metrics=metrics).finalize(
        booking_id, EndReason.GIVER_NO_SHOW, now=ENDED_AT
    )

    assert result["refund_gross_cents"] == 5000
    assert await metrics.get("refund_failures") == 1

    booking = (
        await db.execute(
            select(Booking).where(Booking.booking_id == booking_id).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert booking.payout_status == "completed"
    assert booking.refund_gross_cents == 5000


async def test_missing_payment_reference_is_counted(db, make_booking, payments, metrics):
    booking_id = await make_booking(payment_reference=None)

    await SettlementEngine(db, payments, metrics=metrics).finalize(booking_id, EndReason.GIVER_NO_SHOW, now=ENDED_AT)

    assert payments.refunds == []
    assert await metrics.get("refund_failures") == 1


async def test_late_join_credit_row(db, make_booking, payments):
    booking_id = await make_booking(seeker_credit_earned=True)

    result = await SettlementEngine(db, payments).finalize(booking_id, EndReason.COMPLETED, now=ENDED_AT)

    assert result["payout_net_cents"] == 4250
    assert result["credit_amount_cents"] == 750
    credits = (await db.execute(select(Credit).where(Credit.source_booking_id == booking_id))).scalars().all()
    assert [(c.reason, c.amount_cents) for c in credits] == [("late_join", 750)]


async def test_second_finalize_is_rejected_without_side_effects(session_factory, make_booking, payments, publisher):
    booking_id = await make_booking(seeker_credit_earned=True)

    async with session_factory() as db:
        await SettlementEngine(db, payments, publisher).finalize(booking_id, EndReason.GIVER_NO_SHOW, now=ENDED_AT)

    async with session_factory() as db:
        with pytest.raises(AlreadySettled):
            await SettlementEngine(db, payments, publisher).finalize(
                booking_id, EndReason.COMPLETED, now=ENDED_AT + timedelta(seconds=5)
            )

    async with session_factory() as db:
        credits = (await db.execute(select(Credit).where(Credit.source_booking_id == booking_id))).scalars().all()
        booking = (await db.execute(select(Booking).where(Booking.booking_id == booking_id))).scalar_one()

    assert len(payments.refunds) == 1
    assert credits == []
    assert booking.end_reason == "giver_no_show"
    assert len(publisher.of("session.finalized")) == 1


async def test_fresh_claim_is_rejected(db, make_booking, payments):
    booking_id = await make_booking(payout_status="processing", claimed_at=ENDED_AT - timedelta(seconds=30))

    with pytest.raises(AlreadySettled):
        await SettlementEngine(db, payments).finalize(booking_id, EndReason.RECEIVER_NO_SHOW, now=ENDED_AT)
    assert payments.refunds == []


async def test_stale_claim_is_taken_over(session_factory, make_booking, payments, metrics):
    booking_id = await make_booking(payout_status="processing", claimed_at=ENDED_AT - timedelta(minutes=10))

    async with session_factory() as db:
        result = await SettlementEngine(db, payments, metrics=metrics, claim_lease_seconds=300).finalize(
            booking_id, EndReason.RECEIVER_NO_SHOW, now=ENDED_AT
        )

    assert result["refund_gross_cents"] == 5000
    assert [r["idempotency_key"] for r in payments.refunds] == [f"finalize-{booking_id}-refund"]
    async with session_factory() as db:
        booking = (await db.execute(select(Booking).where(Booking.booking_id == booking_id))).scalar_one()
    assert booking.payout_status == "completed"
    assert booking.ended_at is not None
    assert await metrics.get("settlements_completed") == 1


async def test_cancelled_settlement_stays_retryable(session_factory, make_booking, payments):
    booking_id = await make_booking()

    class CancelledRefunds(FakePayments):
        async def create_refund(self, payment_reference, amount_cents, idempotency_key):
            raise asyncio.CancelledError()

    async with session_factory() as db:
        with pytest.raises(asyncio.CancelledError):
            await SettlementEngine(db, CancelledRefunds()).finalize(booking_id, EndReason.GIVER_NO_SHOW, now=ENDED_AT)

    async with session_factory() as db:
        booking = (await db.execute(select(Booking).where(Booking.booking_id == booking_id))).scalar_one()
        assert booking.payout_status == "pending"
        assert booking.claimed_at is None
        assert booking.ended_at is None

    async with session_factory() as db:
        result = await SettlementEngine(db, payments).finalize(
            booking_id, EndReason.GIVER_NO_SHOW, now=ENDED_AT + timedelta(seconds=5)
        )

    assert result["refund_gross_cents"] == 5000
    assert len(payments.refunds) == 1


async def test_elapsed_counts_from_actual_start(db, make_booking, payments):
    booking_id = await make_booking(started_at=T0 + timedelta(minutes=3))

    result = await SettlementEngine(db, payments).finalize(booking_id, EndReason.COMPLETED, now=ENDED_AT)

    assert result["elapsed_seconds"] == 22 * 60


async def test_unknown_booking(db, payments):
    with pytest.raises(BookingNotFound):
        await SettlementEngine(db, payments).finalize("missing", EndReason.COMPLETED, now=ENDED_AT)


async def test_write_failure_releases_claim(session_factory, make_booking, payments):
    booking_id = await make_booking()

    async with session_factory() as db:
        await db.execute(
            text(
                "CREATE TRIGGER block_settlement BEFORE UPDATE OF ended_at ON bookings "
                "WHEN NEW.ended_at IS NOT NULL BEGIN SELECT RAISE(ABORT, 'bookings is read-only'); END"
            )
        )
        await db.commit()

    async with session_factory() as db:
        with pytest.raises(SettlementWriteFailed):
            await SettlementEngine(db, payments).finalize(booking_id, EndReason.COMPLETED, now=ENDED_AT)

    async with session_factory() as db:
        booking = (await db.execute(select(Booking).where(Booking.booking_id == booking_id))).scalar_one()
        assert booking.payout_status == "pending"
        assert booking.ended_at is None
        milestones = (await db.execute(select(Milestone).where(Milestone.booking_id == booking_id))).scalars().all()
        assert milestones == []


async def test_failed_credit_does_not_block_the_rest(session_factory, make_booking, payments, metrics, monkeypatch):
    booking_id = await make_booking()
    monkeypatch.setattr(
        settlement,
        "settlement_policy",
        lambda *args, **kwargs: Outcome(
            4250, 0, (("safety_exit_compensation", 750), ("late_join", 750))
        ),
    )

    add = AsyncSession.add

    def flaky_add(session, instance, *args, **kwargs):
        if isinstance(instance, Credit) and instance.reason == "safety_exit_compensation":
            raise OperationalError("INSERT INTO credits", {}, Exception("disk I/O error"))
        return add(session, instance, *args, **kwargs)

    monkeypatch.setattr(AsyncSession, "add", flaky_add)

    async with session_factory() as db:
        result = await SettlementEngine(db, payments, metrics=metrics).finalize(
            booking_id, EndReason.GIVER_SAFETY_EXIT, now=ENDED_AT
        )

    assert result["credit_amount_cents"] == 1500
    assert await metrics.get("credit_failures") == 1

    async with session_factory() as db:
        credits = (await db.execute(select(Credit).where(Credit.source_booking_id == booking_id))).scalars().all()
        booking = (await db.execute(select(Booking).where(Booking.booking_id == booking_id))).scalar_one()
    assert [(c.reason, c.amount_cents) for c in credits] == [("late_join", 750)]
    assert booking.payout_status == "completed"
    assert booking.end_reason == "giver_safety_exit"
