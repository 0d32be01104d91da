import logging
from typing import Annotated

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlmodel import Session

from . import models
from .db import get_session
from .payment_gateway import PaymentGateway, get_gateway, parse_stripe_event
from .payment_service import create_delivery_attempt, process_gateway_event
from .security import get_current_user
from .settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payments/stripe/webhook")
async def stripe_webhook(
    request: Request,
    session: Session = Depends(get_session),
) -> dict:
    """
    Stripe webhook endpoint.

    Returns 400 only for a bad signature or a body that is not a Stripe event.
    Anything this service cannot apply is acknowledged so Stripe stops
    redelivering it; database failures surface as 500 and Stripe retries.
    """
    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = parse_stripe_event(payload, signature, settings.stripe_webhook_secret)
    except ValueError as e:
        logger.warning(f"Stripe webhook payload is not a Stripe event: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event is None:
        return {"received": True, "outcome": "ignored"}

    outcome = process_gateway_event(session, event)
    return {"received": True, "outcome": outcome}


@router.post("/delivery/{restaurant_id}/payment-attempts")
def start_delivery_checkout(
    restaurant_id: int,
    body: models.DeliveryAttemptCreate,
    current_user: Annotated[models.User, Depends(get_current_user)],
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict:
    """Price a delivery basket and return the card intent the diner pays."""
    attempt, intent = create_delivery_attempt(session, gateway, restaurant_id, current_user, body)
    return {
        "attempt_id": attempt.id,
        "status": attempt.status.value,
        "currency": attempt.currency,
        "subtotal_cents": attempt.subtotal_cents,
        "delivery_fee_cents": attempt.delivery_fee_cents,
        "total_cents": attempt.total_cents,
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.intent_id,
        "publishable_key": intent.publishable_key,
    }
