"""
Stripe adapter.

Outbound: create a PaymentIntent for an exact amount. Inbound: verify a webhook
delivery and reduce it to a `GatewayEvent` the callback processor understands.
"""

import logging
from typing import Any

import stripe
from sqlmodel import SQLModel

from . import models
from .errors import GatewayUnavailableError
from .settings import settings

logger = logging.getLogger(__name__)

# Stripe's default tolerance for webhook timestamps, in seconds
WEBHOOK_TOLERANCE = 300

# metadata["kind"] values
TABLE_ORDER = "table_order"
RESERVATION_DEPOSIT = "reservation_deposit"
DELIVERY_ATTEMPT = "delivery_attempt"

_EVENT_STATUSES = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
}


class GatewayIntent(SQLModel):
    intent_id: str
    client_secret: str | None = None
    publishable_key: str | None = None
    amount_minor_units: int
    currency: str


class GatewayEvent(SQLModel):
    event_id: str | None = None
    intent_id: str | None = None
    status: str  # "succeeded" | "failed"
    amount_minor_units: int | None = None
    currency: str | None = None
    metadata: dict[str, Any] = {}


class PaymentGateway:
    def create_intent(
        self,
        restaurant: models.Restaurant,
        amount_minor_units: int,
        currency: str,
        metadata: dict[str, Any],
        description: str | None = None,
    ) -> GatewayIntent:
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    def create_intent(
        self,
        restaurant: models.Restaurant,
        amount_minor_units: int,
        currency: str,
        metadata: dict[str, Any],
        description: str | None = None,
    ) -> GatewayIntent:
        # Restaurant-specific key first, global key as fallback
        secret_key = restaurant.stripe_secret_key or settings.stripe_secret_key
        if not secret_key:
            raise GatewayUnavailableError("Card payments are not configured for this restaurant")

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor_units,
                currency=currency.lower(),
                api_key=secret_key,
                automatic_payment_methods={"enabled": True},
                metadata={key: str(value) for key, value in metadata.items() if value is not None},
                description=description,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe intent creation failed for restaurant {restaurant.id}: {e}")
            raise GatewayUnavailableError("Payment provider is unavailable, please try again") from e

        return GatewayIntent(
            intent_id=intent.id,
            client_secret=intent.client_secret,
            publishable_key=restaurant.stripe_publishable_key or settings.stripe_publishable_key or None,
            amount_minor_units=amount_minor_units,
            currency=currency.upper(),
        )


def get_gateway() -> PaymentGateway:
    return StripeGateway()


def parse_stripe_event(payload: bytes, signature: str | None, secret: str) -> GatewayEvent | None:
    """
    Verify a webhook delivery and map it to a `GatewayEvent`.

    Raises `stripe.SignatureVerificationError` for a bad signature and
    `ValueError` for a body that is not a Stripe event. Returns None for event
    types this service does not act on.
    """
    event = stripe.Webhook.construct_event(payload, signature, secret, WEBHOOK_TOLERANCE)
    data = event.to_dict()

    status = _EVENT_STATUSES.get(data.get("type"))
    if status is None:
        logger.info(f"Ignoring Stripe event type {data.get('type')!r}")
        return None

    obj = (data.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        logger.warning(f"Stripe event {data.get('id')} has no payment intent object")
        return None

    amount = obj.get("amount")
    metadata = obj.get("metadata")
    return GatewayEvent(
        event_id=data.get("id"),
        intent_id=obj.get("id"),
        status=status,
        amount_minor_units=amount if isinstance(amount, int) else None,
        currency=obj.get("currency"),
        metadata=metadata if isinstance(metadata, dict) else {},
    )
