"""
Payment processor client.

`PaymentProcessor` is the surface the checkout engine depends on;
`StripeProcessor` implements it on Stripe Connect (destination charges, the
platform fee taken as an application fee). Every processor failure is
re-raised as `ExternalServiceError`.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import stripe

from marketplace.core.errors import ExternalServiceError, ValidationError
from marketplace.services.money import to_minor

logger = logging.getLogger(__name__)


@dataclass
class CheckoutHandle:
    id: str
    url: str


@dataclass
class IntentHandle:
    id: str
    client_secret: str


@dataclass
class PaymentStatus:
    paid: bool
    status: str
    payment_reference: Optional[str] = None


@dataclass
class PayoutResult:
    id: str
    status: str


class PaymentProcessor:
    def create_seller_account(self, seller_id, email: str, country: str) -> str:
        raise NotImplementedError

    def create_hosted_checkout(
        self, order_id, account_id: str, amount: Decimal, currency: str,
        success_url: str, cancel_url: str, application_fee: Decimal = Decimal("0"),
        customer_email: Optional[str] = None,
    ) -> CheckoutHandle:
        raise NotImplementedError

    def create_payment_intent(
        self, order_id, account_id: str, amount: Decimal, currency: str,
        application_fee: Decimal = Decimal("0"), customer_email: Optional[str] = None,
    ) -> IntentHandle:
        raise NotImplementedError

    def retrieve_session_status(self, session_id: str) -> PaymentStatus:
        raise NotImplementedError

    def retrieve_payment_intent_status(self, intent_id: str) -> PaymentStatus:
        raise NotImplementedError

    def expire_session(self, session_id: str) -> None:
        raise NotImplementedError

    def create_payout(self, account_id: str, amount: Decimal, currency: str, metadata=None) -> PayoutResult:
        raise NotImplementedError

    def construct_event(self, payload: bytes, signature: str) -> dict:
        raise NotImplementedError


class StripeProcessor(PaymentProcessor):
    def __init__(self, api_key: str, webhook_secret: Optional[str] = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def _require_key(self):
        if not self.api_key:
            raise ExternalServiceError("Payment processor is not configured")
        stripe.api_key = self.api_key

    def create_seller_account(self, seller_id, email, country):
        self._require_key()
        try:
            account = stripe.Account.create(
                type="express",
                country=country,
                email=email,
                capabilities={"card_payments": {"requested": True}, "transfers": {"requested": True}},
                metadata={"seller_id": str(seller_id)},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe account creation failed for seller %s: %s", seller_id, exc)
            raise ExternalServiceError("Could not create payment account", seller_id=str(seller_id)) from exc
        return account.id

    def create_hosted_checkout(
        self, order_id, account_id, amount, currency, success_url, cancel_url,
        application_fee=Decimal("0"), customer_email=None,
    ):
        self._require_key()
        metadata = {"order_id": str(order_id)}
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": f"Order {order_id}"},
                        "unit_amount": to_minor(amount),
                    },
                    "quantity": 1,
                }],
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                payment_intent_data={
                    "application_fee_amount": to_minor(application_fee),
                    "transfer_data": {"destination": account_id},
                    "metadata": metadata,
                },
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session failed for order %s: %s", order_id, exc)
            raise ExternalServiceError("Could not create checkout session", order_id=str(order_id)) from exc
        return CheckoutHandle(id=session.id, url=session.url)

    def create_payment_intent(
        self, order_id, account_id, amount, currency,
        application_fee=Decimal("0"), customer_email=None,
    ):
        self._require_key()
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor(amount),
                currency=currency.lower(),
                application_fee_amount=to_minor(application_fee),
                transfer_data={"destination": account_id},
                metadata={"order_id": str(order_id)},
                receipt_email=customer_email,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe payment intent failed for order %s: %s", order_id, exc)
            raise ExternalServiceError("Could not create payment intent", order_id=str(order_id)) from exc
        return IntentHandle(id=intent.id, client_secret=intent.client_secret)

    def retrieve_session_status(self, session_id):
        self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as exc:
            raise ExternalServiceError("Could not retrieve checkout session", session_id=session_id) from exc
        reference = session.payment_intent
        if reference is not None and not isinstance(reference, str):
            reference = reference.id
        return PaymentStatus(
            paid=session.payment_status == "paid",
            status=session.payment_status,
            payment_reference=reference,
        )

    def retrieve_payment_intent_status(self, intent_id):
        self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise ExternalServiceError("Could not retrieve payment intent", intent_id=intent_id) from exc
        return PaymentStatus(paid=intent.status == "succeeded", status=intent.status, payment_reference=intent.id)

    def expire_session(self, session_id):
        self._require_key()
        try:
            stripe.checkout.Session.expire(session_id)
        except stripe.StripeError as exc:
            raise ExternalServiceError("Could not expire checkout session", session_id=session_id) from exc

    def create_payout(self, account_id, amount, currency, metadata=None):
        self._require_key()
        try:
            payout = stripe.Payout.create(
                amount=to_minor(amount),
                currency=currency.lower(),
                metadata=metadata or {},
                stripe_account=account_id,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe payout failed for account %s: %s", account_id, exc)
            raise ExternalServiceError(exc.user_message or "Payout could not be created") from exc
        return PayoutResult(id=payout.id, status=payout.status)

    def construct_event(self, payload, signature):
        if not self.webhook_secret:
            raise ExternalServiceError("Webhook secret is not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValidationError("Invalid webhook signature") from exc
