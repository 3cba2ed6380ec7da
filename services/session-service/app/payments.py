"""Stripe payment capability: refunds, destination charges, Connect account status."""

import asyncio
import logging

import stripe

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import CURRENCY, PAYMENTS_TIMEOUT_SECONDS, STRIPE_SECRET_KEY
from .errors import PaymentError

logger = logging.getLogger(__name__)

# a PaymentIntent in any other state has not taken the money
CHARGED_STATUSES = frozenset({"succeeded", "processing"})


class StripePayments:
    """
    Stripe SDK calls wrapped in a circuit breaker. Every call raises
    PaymentError on any failure; callers decide whether that is fatal.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        secret_key: str = STRIPE_SECRET_KEY,
        timeout: float = PAYMENTS_TIMEOUT_SECONDS,
    ):
        self.breaker = breaker
        self.secret_key = secret_key
        self.timeout = timeout

    async def _call(self, operation: str, fn, *args, **params):
        if not self.secret_key:
            raise PaymentError("Stripe is not configured")

        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            raise PaymentError(str(e))

        try:
            obj = await asyncio.wait_for(fn(*args, api_key=self.secret_key, **params), self.timeout)
        except asyncio.TimeoutError:
            await self.breaker.record_failure()
            raise PaymentError(f"Timeout calling Stripe: {operation}")
        except stripe.APIConnectionError as e:
            await self.breaker.record_failure()
            raise PaymentError(f"Stripe unreachable: {e}")
        except stripe.StripeError as e:
            status = e.http_status
            # 4xx is a rejection of this request, not an outage
            if status is None or status >= 500:
                await self.breaker.record_failure()
            raise PaymentError(f"Stripe API error {status}: {e.user_message or e}", status_code=status)

        await self.breaker.record_success()
        return obj.to_dict()

    async def create_refund(self, payment_reference: str, amount_cents: int, idempotency_key: str) -> dict:
        return await self._call(
            "refund",
            stripe.Refund.create_async,
            payment_intent=payment_reference,
            amount=amount_cents,
            reason="requested_by_customer",
            idempotency_key=idempotency_key,
        )

    async def create_destination_charge(
        self,
        amount_cents: int,
        net_amount_cents: int,
        destination_account: str,
        source_payment_reference: str,
        metadata: dict,
        idempotency_key: str,
    ) -> dict:
        """
        Charge the payer off-session with the card behind their original
        booking payment, and transfer the net amount to the payee's connected
        account. Raises PaymentError unless Stripe reports the money taken.
        """
        source = await self._call("retrieve source payment", stripe.PaymentIntent.retrieve_async, source_payment_reference)
        customer = source.get("customer")
        payment_method = source.get("payment_method")
        if not customer or not payment_method:
            raise PaymentError(f"No saved payment method on {source_payment_reference}")

        intent = await self._call(
            "extension charge",
            stripe.PaymentIntent.create_async,
            amount=amount_cents,
            currency=CURRENCY,
            customer=customer,
            payment_method=payment_method,
            confirm=True,
            off_session=True,
            transfer_data={"destination": destination_account, "amount": net_amount_cents},
            metadata={key: str(value) for key, value in metadata.items()},
            idempotency_key=idempotency_key,
        )
        if intent.get("status") not in CHARGED_STATUSES:
            raise PaymentError(f"Extension charge {intent.get('id')} is {intent.get('status')}", status_code=402)
        return intent

    async def get_account(self, account_id: str) -> dict:
        return await self._call("account", stripe.Account.retrieve_async, account_id)
