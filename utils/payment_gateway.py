"""
Stripe-backed payment gateway.

The booking core only needs four capabilities: create an order, verify a
signed confirmation, fetch the authoritative payment, refund. An order is a
PaymentIntent; a payment reference is the Charge that settled it.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal

import stripe
from flask import current_app

from services.errors import UpstreamTimeout, ValidationError

logger = logging.getLogger(__name__)

# currencies Stripe expects in whole units rather than cents/paise
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "XOF", "XAF"}


@dataclass(frozen=True)
class PaymentInfo:
    payment_ref: str
    order_ref: str
    amount: Decimal
    currency: str
    status: str
    method: str = None

    @property
    def succeeded(self):
        return self.status == "succeeded"


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int((amount * 100).to_integral_value())


def from_minor_units(value: int, currency: str) -> Decimal:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(value)
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


class StripeGateway:
    def __init__(self, secret_key, signing_secret=None, webhook_secret=None, timeout=10, tolerance=300):
        self.secret_key = secret_key
        self.signing_secret = signing_secret
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

        # bounded calls; a timeout surfaces as UpstreamTimeout instead of hanging a request
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = 0

    def _call(self, what, fn, *args, **kwargs):
        if not self.secret_key:
            raise UpstreamTimeout("Stripe secret key missing (STRIPE_SECRET_KEY)")
        try:
            return fn(*args, api_key=self.secret_key, **kwargs)
        except stripe.APIConnectionError as exc:
            logger.warning("Stripe %s timed out / unreachable: %s", what, exc)
            raise UpstreamTimeout(f"Stripe {what} failed: {exc}")
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe %s rejected: %s", what, exc)
            raise ValidationError(f"Stripe {what} rejected: {exc}", "Payment could not be processed")
        except stripe.StripeError as exc:
            logger.error("Stripe %s error: %s", what, exc)
            raise UpstreamTimeout(f"Stripe {what} error: {exc}")

    def create_order(self, amount: Decimal, currency: str, receipt: str) -> str:
        intent = self._call(
            "create_order",
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount, currency),
            currency=currency.lower(),
            metadata={"receipt": receipt},
        )
        logger.info("Payment order created %s for %s %s (%s)", intent.id, amount, currency, receipt)
        return intent.id

    def verify_signature(self, order_ref, payment_ref, signature, payload=None) -> bool:
        """
        Checks a Stripe-style ``t=...,v1=...`` signature header.

        Client callbacks sign ``"{order_ref}|{payment_ref}"`` with the payment
        signing secret; webhook deliveries sign the raw body with the webhook
        secret.
        """
        if payload is None:
            payload = f"{order_ref}|{payment_ref}"
            secret = self.signing_secret
        else:
            secret = self.webhook_secret
        try:
            stripe.WebhookSignature.verify_header(payload, signature, secret, self.tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Payment signature rejected for order %s: %s", order_ref, exc)
            return False
        return True

    def fetch_payment(self, payment_ref: str) -> PaymentInfo:
        charge = self._call("fetch_payment", stripe.Charge.retrieve, payment_ref)
        currency = (charge.currency or "").upper()
        details = getattr(charge, "payment_method_details", None)
        info = PaymentInfo(
            payment_ref=charge.id,
            order_ref=getattr(charge, "payment_intent", None),
            amount=from_minor_units(charge.amount, currency),
            currency=currency,
            status=charge.status,
            method=getattr(details, "type", None),
        )
        logger.info("Payment %s fetched: %s %s %s", payment_ref, info.amount, info.currency, info.status)
        return info

    def refund(self, payment_ref: str, amount: Decimal, currency: str) -> str:
        refund = self._call(
            "refund",
            stripe.Refund.create,
            charge=payment_ref,
            amount=to_minor_units(amount, currency),
        )
        logger.info("Payment %s refunded: %s", payment_ref, refund.id)
        return refund.id


def init_gateway(app):
    app.extensions["payment_gateway"] = StripeGateway(
        secret_key=app.config.get("STRIPE_SECRET_KEY"),
        signing_secret=app.config.get("PAYMENT_SIGNING_SECRET"),
        webhook_secret=app.config.get("STRIPE_WEBHOOK_SECRET"),
        timeout=app.config.get("GATEWAY_TIMEOUT_SECONDS", 10),
        tolerance=app.config.get("PAYMENT_SIGNATURE_TOLERANCE_SECONDS", 300),
    )


def get_gateway():
    return current_app.extensions["payment_gateway"]
