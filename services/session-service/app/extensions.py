"""
Extension negotiation between receiver and giver.

Per booking: idle -> checking_availability -> receiver_prompt -> requested
-> accepted | declined | timeout | payment_failed.

Every transition out of `pending` is a guarded update on the row's status, so
a repeated or concurrent accept/decline/timeout is rejected instead of being
applied twice. Pending requests carry a server-side deadline (`expires_at`);
stale rows are timed out lazily on read and by the expiry worker.

Accepting claims the row before the extension is charged, so the deadline
stops applying to it. An accept interrupted mid-charge is resumed by the
giver accepting again, under the same charge idempotency key.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import as_utc, upsert_for
from shared.events import build_event, to_json

from .availability import extension_window, find_open_slot
from .config import (
    EXTENSION_RESPONSE_SECONDS,
    EXTENSION_TRIGGER_SECONDS,
    EXTENSION_TRIGGER_TOLERANCE_SECONDS,
    EXTENSION_WINDOW_MINUTES,
    MIN_CHARGE_CENTS,
    PLATFORM_FEE_PERCENT,
)
from .errors import (
    BookingEnded,
    BookingNotFound,
    ExtensionConflict,
    ExtensionNotFound,
    NotParticipant,
    PaymentError,
    ValidationFailed,
)
from .milestones import record_milestone
from .models import Booking, ExtensionRequest, Profile, SessionState
from .phase_clock import elapsed_seconds, session_seconds_remaining
from .schemas import ExtensionResponse, ExtensionStatus, GiverResponse, NegotiationState

logger = logging.getLogger(__name__)

GIVER = "giver"
RECEIVER = "receiver"


def role_of(booking: Booking, user_id: str | None) -> str | None:
    if user_id and user_id == booking.giver_id:
        return GIVER
    if user_id and user_id == booking.receiver_id:
        return RECEIVER
    return None


def offer_due(
    role: str | None,
    seconds_remaining: int,
    threshold: int = EXTENSION_TRIGGER_SECONDS,
    tolerance: int = EXTENSION_TRIGGER_TOLERANCE_SECONDS,
) -> bool:
    """The receiver is offered an extension when the session hits the threshold."""
    if role != RECEIVER:
        return False
    return threshold - tolerance <= seconds_remaining <= threshold


def net_of_platform_fee(amount_cents: int, fee_percent: float = PLATFORM_FEE_PERCENT) -> int:
    return amount_cents - round(amount_cents * fee_percent / 100)


class ExtensionNegotiator:
    def __init__(
        self,
        db: AsyncSession,
        publisher=None,
        payments=None,
        metrics=None,
        response_seconds: int = EXTENSION_RESPONSE_SECONDS,
    ):
        self.db = db
        self.publisher = publisher
        self.payments = payments
        self.metrics = metrics
        self.response_seconds = response_seconds

    # ---------- lookups ----------

    async def _booking(self, booking_id: str) -> Booking:
        res = await self.db.execute(
            select(Booking)
            .where(Booking.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = res.scalar_one_or_none()
        if not booking:
            raise BookingNotFound()
        return booking

    async def _extension(self, extension_id: str) -> ExtensionRequest:
        res = await self.db.execute(
            select(ExtensionRequest)
            .where(ExtensionRequest.extension_id == extension_id)
            .execution_options(populate_existing=True)
        )
        ext = res.scalar_one_or_none()
        if not ext:
            raise ExtensionNotFound()
        return ext

    async def _pending(self, booking_id: str) -> ExtensionRequest | None:
        res = await self.db.execute(
            select(ExtensionRequest).where(
                ExtensionRequest.booking_id == booking_id,
                ExtensionRequest.status == ExtensionStatus.PENDING.value,
            )
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def _fresh_pending(self, booking_id: str, now: datetime) -> ExtensionRequest | None:
        """Pending request of the booking, after timing it out if its deadline passed."""
        ext = await self._pending(booking_id)
        # an accepted row is mid-charge and no longer subject to the deadline
        if ext and ext.giver_response is None and as_utc(ext.expires_at) <= now:
            try:
                await self._expire(ext.extension_id, ext.booking_id, now)
            except ExtensionConflict:
                pass  # answered concurrently, no longer pending either way
            return None
        return ext

    # ---------- side effects ----------

    async def _publish(self, event_type: str, data: dict) -> None:
        if not self.publisher:
            return
        await self.publisher.publish(event_type, to_json(build_event(event_type, data)))

    async def _set_projection_extension(self, booking_id: str, pending: bool, extension_id: str) -> None:
        values = {"extension_pending": pending, "extension_id": extension_id}
        table = SessionState.__table__
        stmt = upsert_for(self.db, table).values(booking_id=booking_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=[table.c.booking_id], set_=values)
        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("failed to update extension flags on session_states for booking %s", booking_id)
            if self.metrics:
                await self.metrics.incr("projection_write_failures")

    async def _transition(self, extension_id: str, values: dict, accepting: bool = False) -> None:
        """
        Guarded update of a pending request. An accept first claims the row
        (giver_response set, status still pending), after which only the
        charge outcome may settle it. Decline and timeout need an unclaimed row.
        """
        if accepting:
            claim = ExtensionRequest.giver_response == GiverResponse.ACCEPTED.value
        else:
            claim = ExtensionRequest.giver_response.is_(None)
        res = await self.db.execute(
            update(ExtensionRequest)
            .where(
                ExtensionRequest.extension_id == extension_id,
                ExtensionRequest.status == ExtensionStatus.PENDING.value,
                claim,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            await self.db.rollback()
            raise ExtensionConflict()
        await self.db.commit()

    async def _snapshot(self, extension_id: str) -> ExtensionResponse:
        res = await self.db.execute(
            select(ExtensionRequest)
            .where(ExtensionRequest.extension_id == extension_id)
            .execution_options(populate_existing=True)
        )
        return ExtensionResponse.model_validate(res.scalar_one(), from_attributes=True)

    # ---------- trigger ----------

    async def check_offer(self, booking_id: str, caller_id: str, now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        booking = await self._booking(booking_id)
        role = role_of(booking, caller_id)
        if role is None:
            raise NotParticipant()

        remaining = session_seconds_remaining(elapsed_seconds(booking.scheduled_time, now))
        result = {
            "booking_id": booking_id,
            "state": NegotiationState.IDLE,
            "seconds_remaining": remaining,
            "giver_available": False,
            "extension_id": None,
        }

        if booking.ended_at is not None:
            return result

        # plain values: a lazy timeout below may roll back and expire the booking
        giver_id = booking.giver_id
        window_start, window_end = extension_window(booking)
        pending = await self._fresh_pending(booking_id, now)
        if pending:
            result["state"] = NegotiationState.REQUESTED
            result["extension_id"] = pending.extension_id
            return result

        if not offer_due(role, remaining):
            return result

        logger.info(
            "booking %s: %ss remaining, %s", booking_id, remaining, NegotiationState.CHECKING_AVAILABILITY.value
        )
        available = await find_open_slot(self.db, giver_id, window_start, window_end) is not None
        result["giver_available"] = available
        if available:
            result["state"] = NegotiationState.RECEIVER_PROMPT
        else:
            logger.info("booking %s: giver %s has no open slot after the session", booking_id, giver_id)
        return result

    # ---------- request ----------

    async def request(
        self,
        booking_id: str,
        caller_id: str,
        amount_cents: int,
        now: datetime | None = None,
    ) -> ExtensionResponse:
        now = now or datetime.now(timezone.utc)
        booking = await self._booking(booking_id)

        if role_of(booking, caller_id) != RECEIVER:
            raise NotParticipant("Only the receiver can request an extension")
        if booking.ended_at is not None:
            raise BookingEnded()
        if amount_cents < MIN_CHARGE_CENTS:
            raise ValidationFailed(f"amount_cents must be at least {MIN_CHARGE_CENTS}")

        if await self._fresh_pending(booking_id, now):
            raise ExtensionConflict("An extension request is already pending for this booking")

        extension_id = str(uuid.uuid4())
        self.db.add(
            ExtensionRequest(
                extension_id=extension_id,
                booking_id=booking_id,
                requested_by=caller_id,
                requested_at=now,
                expires_at=now + timedelta(seconds=self.response_seconds),
                amount_cents=amount_cents,
                status=ExtensionStatus.PENDING.value,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # lost the race against a concurrent request for the same booking
            await self.db.rollback()
            raise ExtensionConflict("An extension request is already pending for this booking")

        snapshot = await self._snapshot(extension_id)

        await self._set_projection_extension(booking_id, True, extension_id)
        await record_milestone(
            self.db, booking_id, "extension_requested", caller_id,
            {"extension_id": extension_id}, metrics=self.metrics,
        )
        await self._publish(
            "extension.requested",
            {
                "booking_id": booking_id,
                "extension_id": extension_id,
                "requested_by": caller_id,
                "amount_cents": amount_cents,
                "expires_at": snapshot.expires_at.isoformat(),
            },
        )
        logger.info("booking %s: extension %s requested", booking_id, extension_id)
        return snapshot

    # ---------- responses ----------

    async def respond(
        self,
        extension_id: str,
        caller_id: str,
        response: GiverResponse,
        now: datetime | None = None,
    ) -> ExtensionResponse:
        now = now or datetime.now(timezone.utc)
        ext = await self._extension(extension_id)
        booking_id = ext.booking_id
        booking = await self._booking(booking_id)
        giver_id = booking.giver_id

        if role_of(booking, caller_id) != GIVER:
            raise NotParticipant("Only the giver can respond to an extension request")

        if ext.status != ExtensionStatus.PENDING.value:
            raise ExtensionConflict(f"Extension request is already {ext.status}")

        if ext.giver_response == GiverResponse.ACCEPTED.value:
            if response != GiverResponse.ACCEPTED:
                raise ExtensionConflict("Extension request is already being accepted")
            # an earlier accept stopped before its charge was recorded
            return await self._accept(ext, booking, now, resume=True)

        if response == GiverResponse.TIMEOUT:
            await self._expire(extension_id, booking_id, now, actor_id=caller_id, source="client")
            return await self._snapshot(extension_id)

        if as_utc(ext.expires_at) <= now:
            await self._expire(extension_id, booking_id, now)
            raise ExtensionConflict("Extension request timed out")

        if response == GiverResponse.ACCEPTED:
            return await self._accept(ext, booking, now)

        await self._transition(
            extension_id,
            {
                "status": ExtensionStatus.DECLINED.value,
                "giver_response": GiverResponse.DECLINED.value,
                "giver_responded_at": now,
            },
        )
        await self._set_projection_extension(booking_id, False, extension_id)
        await record_milestone(
            self.db, booking_id, "extension_declined", giver_id,
            {"extension_id": extension_id}, metrics=self.metrics,
        )
        await self._publish(
            "extension.declined",
            {"booking_id": booking_id, "extension_id": extension_id, "reason": "declined"},
        )
        return await self._snapshot(extension_id)

    async def _accept(
        self,
        ext: ExtensionRequest,
        booking: Booking,
        now: datetime,
        resume: bool = False,
    ) -> ExtensionResponse:
        extension_id = ext.extension_id
        amount_cents = ext.amount_cents
        booking_id = booking.booking_id
        giver_id = booking.giver_id
        receiver_id = booking.receiver_id
        payment_source = booking.payment_reference

        if not resume:
            # claimed before charging so the sweep cannot time it out mid-charge
            await self._transition(
                extension_id,
                {"giver_response": GiverResponse.ACCEPTED.value, "giver_responded_at": now},
            )

        res = await self.db.execute(select(Profile.stripe_account_id).where(Profile.user_id == giver_id))
        destination = res.scalar_one_or_none()

        payment_reference = None
        failure = None
        if not self.payments:
            failure = "payments unavailable"
        elif not destination:
            failure = "giver has no payout account"
        elif not payment_source:
            failure = "booking has no payment to charge against"
        else:
            try:
                intent = await self.payments.create_destination_charge(
                    amount_cents=amount_cents,
                    net_amount_cents=net_of_platform_fee(amount_cents),
                    destination_account=destination,
                    source_payment_reference=payment_source,
                    metadata={"booking_id": booking_id, "extension_id": extension_id, "type": "extension"},
                    idempotency_key=f"extension-{extension_id}-charge",
                )
                payment_reference = intent.get("id")
            except PaymentError as e:
                failure = str(e)

        if failure:
            logger.error("booking %s: extension %s charge failed: %s", booking_id, extension_id, failure)
            await self._transition(extension_id, {"status": ExtensionStatus.PAYMENT_FAILED.value}, accepting=True)
            await self._set_projection_extension(booking_id, False, extension_id)
            await record_milestone(
                self.db, booking_id, "extension_payment_failed", giver_id,
                {"extension_id": extension_id, "error": failure}, metrics=self.metrics,
            )
            await self._publish(
                "extension.declined",
                {"booking_id": booking_id, "extension_id": extension_id, "reason": "payment_failed"},
            )
            return await self._snapshot(extension_id)

        await self._transition(
            extension_id,
            {"status": ExtensionStatus.ACCEPTED.value, "payment_reference": payment_reference},
            accepting=True,
        )
        await self._set_projection_extension(booking_id, False, extension_id)
        await record_milestone(
            self.db, booking_id, "extension_granted", giver_id,
            {"extension_id": extension_id}, metrics=self.metrics,
        )
        await self._publish(
            "extension.granted",
            {
                "booking_id": booking_id,
                "extension_id": extension_id,
                "giver_id": giver_id,
                "receiver_id": receiver_id,
                "minutes": EXTENSION_WINDOW_MINUTES,
            },
        )
        logger.info("booking %s: extension %s granted", booking_id, extension_id)
        return await self._snapshot(extension_id)

    async def _expire(
        self,
        extension_id: str,
        booking_id: str,
        now: datetime,
        actor_id: str | None = None,
        source: str = "server",
    ) -> None:
        await self._transition(
            extension_id,
            {
                "status": ExtensionStatus.TIMEOUT.value,
                "giver_response": GiverResponse.TIMEOUT.value,
                "giver_responded_at": now,
            },
        )
        if source == "server" and self.metrics:
            await self.metrics.incr("extensions_expired")
        await self._set_projection_extension(booking_id, False, extension_id)
        await record_milestone(
            self.db, booking_id, "extension_declined", actor_id,
            {"extension_id": extension_id, "reason": "timeout", "source": source}, metrics=self.metrics,
        )
        await self._publish(
            "extension.declined",
            {"booking_id": booking_id, "extension_id": extension_id, "reason": "timeout"},
        )
        logger.info("booking %s: extension %s timed out (%s)", booking_id, extension_id, source)

    # ---------- reads / sweep ----------

    async def get(self, extension_id: str, caller_id: str, now: datetime | None = None) -> ExtensionResponse:
        now = now or datetime.now(timezone.utc)
        ext = await self._extension(extension_id)
        booking = await self._booking(ext.booking_id)
        if role_of(booking, caller_id) is None:
            raise NotParticipant()
        if ext.status == ExtensionStatus.PENDING.value:
            await self._fresh_pending(ext.booking_id, now)
        return await self._snapshot(extension_id)

    async def pending_for(self, booking_id: str, caller_id: str, now: datetime | None = None) -> ExtensionResponse | None:
        now = now or datetime.now(timezone.utc)
        booking = await self._booking(booking_id)
        if role_of(booking, caller_id) is None:
            raise NotParticipant()
        ext = await self._fresh_pending(booking_id, now)
        if not ext:
            return None
        return await self._snapshot(ext.extension_id)

    async def expire_stale(self, now: datetime | None = None, limit: int = 50) -> list[str]:
        now = now or datetime.now(timezone.utc)
        res = await self.db.execute(
            select(ExtensionRequest.extension_id, ExtensionRequest.booking_id)
            .where(
                ExtensionRequest.status == ExtensionStatus.PENDING.value,
                ExtensionRequest.giver_response.is_(None),
                ExtensionRequest.expires_at <= now,
            )
            .order_by(ExtensionRequest.expires_at)
            .limit(limit)
        )
        expired = []
        for extension_id, booking_id in res.all():
            try:
                await self._expire(extension_id, booking_id, now)
            except ExtensionConflict:
                continue
            expired.append(extension_id)
        return expired
