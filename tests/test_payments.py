import asyncio

import pytest
import stripe
from sqlalchemy import select

from app.breaker import CircuitBreaker, CircuitBreakerOpen
from app.errors import PaymentError
from app.models import Profile
from app.payments import StripePayments
from app.payouts import account_status


class StripeResult(dict):
    def to_dict(self):
        return dict(self)


class StripeStub:
    """Stands in for one SDK call, recording its arguments."""

    def __init__(self, *results):
        self.results = list(results) or [{"id": "re_123"}]
        self.calls = []

    async def __call__(self, *args, **params):
        self.calls.append((args, params))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return StripeResult(result)


@pytest.fixture
def breaker(redis):
    return CircuitBreaker(redis, "stripe-test", failure_threshold=2, reset_timeout_seconds=60)


@pytest.fixture
def stripe_payments(breaker):
    return StripePayments(breaker, secret_key="sk_test_123", timeout=1)


async def test_refund_carries_idempotency_key(stripe_payments, monkeypatch):
    stub = StripeStub()
    monkeypatch.setattr(stripe.Refund, "create_async", stub)

    result = await stripe_payments.create_refund("pi_1", 5000, idempotency_key="finalize-b1-refund")

    assert result == {"id": "re_123"}
    [(args, params)] = stub.calls
    assert params == {
        "payment_intent": "pi_1",
        "amount": 5000,
        "reason": "requested_by_customer",
        "idempotency_key": "finalize-b1-refund",
        "api_key": "sk_test_123",
    }


async def test_destination_charge_is_confirmed_off_session(stripe_payments, monkeypatch):
    retrieve = StripeStub({"id": "pi_booking", "customer": "cus_1", "payment_method": "pm_1"})
    create = StripeStub({"id": "pi_ext", "status": "succeeded"})
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve_async", retrieve)
    monkeypatch.setattr(stripe.PaymentIntent, "create_async", create)

    intent = await stripe_payments.create_destination_charge(
        amount_cents=1000,
        net_amount_cents=850,
        destination_account="acct_1",
        source_payment_reference="pi_booking",
        metadata={"booking_id": "b1"},
        idempotency_key="extension-e1-charge",
    )

    assert intent["id"] == "pi_ext"
    assert retrieve.calls[0][0] == ("pi_booking",)
    params = create.calls[0][1]
    assert params["customer"] == "cus_1"
    assert params["payment_method"] == "pm_1"
    assert params["confirm"] is True
    assert params["off_session"] is True
    assert params["transfer_data"] == {"destination": "acct_1", "amount": 850}
    assert params["metadata"] == {"booking_id": "b1"}
    assert params["idempotency_key"] == "extension-e1-charge"


async def test_unconfirmed_charge_is_a_payment_error(stripe_payments, monkeypatch):
    monkeypatch.setattr(
        stripe.PaymentIntent, "retrieve_async", StripeStub({"customer": "cus_1", "payment_method": "pm_1"})
    )
    monkeypatch.setattr(
        stripe.PaymentIntent, "create_async", StripeStub({"id": "pi_ext", "status": "requires_action"})
    )

    with pytest.raises(PaymentError, match="requires_action"):
        await stripe_payments.create_destination_charge(1000, 850, "acct_1", "pi_booking", {}, "extension-e1-charge")


async def test_charge_needs_a_saved_payment_method(stripe_payments, monkeypatch):
    create = StripeStub({"id": "pi_ext", "status": "succeeded"})
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve_async", StripeStub({"customer": None, "payment_method": None}))
    monkeypatch.setattr(stripe.PaymentIntent, "create_async", create)

    with pytest.raises(PaymentError, match="No saved payment method"):
        await stripe_payments.create_destination_charge(1000, 850, "acct_1", "pi_booking", {}, "extension-e1-charge")
    assert create.calls == []


async def test_missing_secret_key_fails_without_calling_out(breaker, monkeypatch):
    stub = StripeStub()
    monkeypatch.setattr(stripe.Account, "retrieve_async", stub)

    with pytest.raises(PaymentError, match="not configured"):
        await StripePayments(breaker, secret_key="").get_account("acct_1")
    assert stub.calls == []


async def test_rejection_does_not_trip_breaker(stripe_payments, breaker, monkeypatch):
    declined = stripe.CardError("Your card was declined.", None, "card_declined", http_status=402)
    monkeypatch.setattr(stripe.Refund, "create_async", StripeStub(declined))

    for _ in range(3):
        with pytest.raises(PaymentError) as exc:
            await stripe_payments.create_refund("pi_1", 100, idempotency_key="k")
        assert exc.value.status_code == 402

    assert (await breaker.status())["state"] == "CLOSED"


async def test_outage_opens_breaker(stripe_payments, breaker, monkeypatch):
    stub = StripeStub(stripe.APIError("upstream unavailable", http_status=503))
    monkeypatch.setattr(stripe.Refund, "create_async", stub)

    for _ in range(2):
        with pytest.raises(PaymentError):
            await stripe_payments.create_refund("pi_1", 100, idempotency_key="k")

    assert (await breaker.status())["state"] == "OPEN"
    with pytest.raises(PaymentError, match="OPEN"):
        await stripe_payments.create_refund("pi_1", 100, idempotency_key="k")
    assert len(stub.calls) == 2


async def test_network_error_is_a_payment_error(stripe_payments, breaker, monkeypatch):
    monkeypatch.setattr(stripe.Account, "retrieve_async", StripeStub(stripe.APIConnectionError("connection refused")))

    with pytest.raises(PaymentError, match="unreachable"):
        await stripe_payments.get_account("acct_1")
    assert (await breaker.status())["failures"] == 1


async def test_slow_stripe_times_out(breaker, monkeypatch):
    async def hang(*args, **params):
        await asyncio.sleep(1)

    monkeypatch.setattr(stripe.Account, "retrieve_async", hang)

    with pytest.raises(PaymentError, match="Timeout"):
        await StripePayments(breaker, secret_key="sk", timeout=0.01).get_account("acct_1")
    assert (await breaker.status())["failures"] == 1


async def test_breaker_half_opens_after_timeout(redis):
    breaker = CircuitBreaker(redis, "half-open", failure_threshold=1, reset_timeout_seconds=0)
    await breaker.record_failure()
    assert (await breaker.status())["state"] == "OPEN"

    await breaker.allow_request()
    assert (await breaker.status())["state"] == "HALF_OPEN"

    await breaker.record_failure()
    assert (await breaker.status())["state"] == "OPEN"

    await breaker.allow_request()
    await breaker.record_success()
    assert await breaker.status() == {"name": "half-open", "state": "CLOSED", "failures": 0}


async def test_open_breaker_rejects(redis):
    breaker = CircuitBreaker(redis, "blocked", reset_timeout_seconds=60)
    await breaker.open()
    with pytest.raises(CircuitBreakerOpen):
        await breaker.allow_request()


# ---------- payout account status ----------

async def test_account_status_without_account(db, payments):
    assert await account_status(db, payments, "giver-1") == {
        "onboarding_complete": False,
        "details_submitted": False,
        "charges_enabled": False,
        "payouts_enabled": False,
    }


async def test_account_status_records_onboarding(db, add_profile, payments):
    await add_profile("giver-1", "acct_1")
    payments.accounts["acct_1"] = {"details_submitted": True, "charges_enabled": True, "payouts_enabled": True}

    status = await account_status(db, payments, "giver-1")

    assert status["onboarding_complete"] is True
    profile = (
        await db.execute(select(Profile).where(Profile.user_id == "giver-1").execution_options(populate_existing=True))
    ).scalar_one()
    assert profile.stripe_onboarding_complete is True


async def test_account_status_partial_onboarding(db, add_profile, payments):
    await add_profile("giver-1", "acct_1")
    payments.accounts["acct_1"] = {"details_submitted": True, "charges_enabled": False, "payouts_enabled": True}

    status = await account_status(db, payments, "giver-1")

    assert status["details_submitted"] is True
    assert status["onboarding_complete"] is False


async def test_account_status_failure_reads_as_not_onboarded(db, add_profile, payments, metrics):
    await add_profile("giver-1", "acct_1")
    payments.fail = True

    status = await account_status(db, payments, "giver-1", metrics=metrics)

    assert status["onboarding_complete"] is False
    assert await metrics.get("account_status_failures") == 1
