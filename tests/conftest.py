import json
import os
import uuid
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SESSION_DB", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.pop("RABBIT_URL", None)

import fakeredis
import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from shared.database import Base, get_session

from app.errors import PaymentError
from app.metrics import Metrics
from app.models import Booking, GiverAvailabilitySlot, Profile

T0 = datetime(2026, 1, 5, 15, 0, tzinfo=timezone.utc)


class FakePayments:
    def __init__(self):
        self.refunds = []
        self.charges = []
        self.accounts = {}
        self.fail = False

    async def create_refund(self, payment_reference, amount_cents, idempotency_key):
        if self.fail:
            raise PaymentError("card_declined", status_code=402)
        self.refunds.append(
            {"payment_reference": payment_reference, "amount_cents": amount_cents, "idempotency_key": idempotency_key}
        )
        return {"id": f"re_{len(self.refunds)}", "status": "succeeded"}

    async def create_destination_charge(
        self, amount_cents, net_amount_cents, destination_account, source_payment_reference, metadata, idempotency_key
    ):
        if self.fail:
            raise PaymentError("Stripe API error 402: Your card was declined.", status_code=402)
        self.charges.append(
            {
                "amount_cents": amount_cents,
                "net_amount_cents": net_amount_cents,
                "destination_account": destination_account,
                "source_payment_reference": source_payment_reference,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        return {"id": f"pi_ext_{len(self.charges)}", "status": "succeeded"}

    async def get_account(self, account_id):
        if self.fail:
            raise PaymentError("Stripe unreachable")
        return self.accounts[account_id]


class RecordingPublisher:
    enabled = True

    def __init__(self):
        self.events = []

    async def publish(self, routing_key, message_body):
        self.events.append((routing_key, json.loads(message_body)))

    def of(self, routing_key):
        return [body for rk, body in self.events if rk == routing_key]


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'session.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def metrics(redis):
    return Metrics(redis)


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def make_booking(session_factory):
    async def _make(**overrides):
        values = {
            "booking_id": str(uuid.uuid4()),
            "giver_id": "giver-1",
            "receiver_id": "receiver-1",
            "scheduled_time": T0,
            "duration_minutes": 25,
            "gross_amount_cents": 5000,
            "platform_fee_cents": 750,
            "net_payout_cents": 4250,
            "payment_reference": "pi_booking_1",
        }
        values.update(overrides)
        async with session_factory() as session:
            session.add(Booking(**values))
            await session.commit()
        return values["booking_id"]

    return _make


@pytest.fixture
def add_slot(session_factory):
    async def _add(giver_id, start_time, minutes=30, **overrides):
        async with session_factory() as session:
            session.add(
                GiverAvailabilitySlot(
                    giver_id=giver_id,
                    start_time=start_time,
                    end_time=start_time + timedelta(minutes=minutes),
                    **overrides,
                )
            )
            await session.commit()

    return _add


@pytest.fixture
def add_profile(session_factory):
    async def _add(user_id, stripe_account_id=None):
        async with session_factory() as session:
            session.add(Profile(user_id=user_id, stripe_account_id=stripe_account_id))
            await session.commit()

    return _add


@pytest_asyncio.fixture
async def client(session_factory, publisher, payments, metrics):
    from app.main import app
    from app.routes import get_db, get_metrics, get_payments, get_publisher

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_payments] = lambda: payments
    app.dependency_overrides[get_metrics] = lambda: metrics

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
