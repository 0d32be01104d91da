"""
Payment callback processor.

Applies gateway "succeeded" / "failed" events to table orders, reservation
deposits and delivery payment attempts. Every event is safe to apply more
than once:

- an event id already recorded in `PaymentEvent` is skipped outright
- each entity handler checks the entity's own state before changing it, so a
  replay under a new event id is still a no-op

Problems with the application-side data an event points at (unknown kind,
missing entity, amount mismatch) are logged and acknowledged. Only
infrastructure failures propagate, letting the gateway retry.
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import models
from .catalog_service import price_basket
from .errors import NotFoundError, OrderValidationError
from .ledger_service import add_order_total, currency_for_restaurant, lock_session
from .notifications import publish_event
from .payment_gateway import (
    DELIVERY_ATTEMPT,
    RESERVATION_DEPOSIT,
    TABLE_ORDER,
    GatewayEvent,
    GatewayIntent,
    PaymentGateway,
)

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"


class MalformedEvent(Exception):
    """The event cannot be applied to our data; acknowledge and move on."""


def _entity_id(event: GatewayEvent) -> int:
    raw = event.metadata.get("entity_id")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise MalformedEvent(f"metadata.entity_id is missing or not an id: {raw!r}")


def _check_intent(expected: str | None, event: GatewayEvent) -> None:
    if expected and event.intent_id and expected != event.intent_id:
        raise MalformedEvent(f"intent {event.intent_id} does not match stored intent {expected}")


def _check_amount(expected_cents: int, currency: str, event: GatewayEvent) -> None:
    if event.amount_minor_units is not None and event.amount_minor_units != expected_cents:
        raise MalformedEvent(
            f"amount {event.amount_minor_units} does not match expected {expected_cents}"
        )
    if event.currency and event.currency.upper() != currency.upper():
        raise MalformedEvent(f"currency {event.currency} does not match expected {currency}")


def _lock(session: Session, model, entity_id: int):
    return session.exec(
        select(model)
        .where(model.id == entity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()


# ============ TABLE ORDERS ============

def _apply_table_order(session: Session, event: GatewayEvent) -> str:
    order = _lock(session, models.Order, _entity_id(event))
    if order is None:
        raise MalformedEvent("order not found")
    if order.payment_method != models.PaymentMethod.card:
        raise MalformedEvent(f"order #{order.id} is not a card order")
    _check_intent(order.payment_intent_id, event)

    if event.status == FAILED:
        if order.payment_status == models.PaymentStatus.paid:
            logger.warning(f"Ignoring payment failure for already paid order #{order.id}")
            return "ignored_already_paid"
        if order.payment_status == models.PaymentStatus.failed:
            return "already_applied"
        order.payment_status = models.PaymentStatus.failed
        session.add(order)
        return "order_payment_failed"

    if order.payment_status == models.PaymentStatus.paid:
        return "already_applied"
    _check_amount(order.total_cents, order.currency, event)

    order.payment_status = models.PaymentStatus.paid
    order.paid_at = models.utcnow()
    session.add(order)

    if order.status == models.OrderStatus.cancelled:
        # Money was captured for an order nobody will serve
        logger.error(
            f"Order #{order.id} was cancelled before payment {event.intent_id} settled; "
            f"{order.total_cents} {order.currency} needs a refund"
        )
        return "paid_after_cancel"

    table_session = lock_session(session, order.session_id)
    add_order_total(session, table_session, order.total_cents, models.PaymentMethod.card)
    return "order_paid"


# ============ RESERVATION DEPOSITS ============

def _apply_reservation_deposit(session: Session, event: GatewayEvent) -> str:
    reservation = _lock(session, models.Reservation, _entity_id(event))
    if reservation is None:
        raise MalformedEvent("reservation not found")
    _check_intent(reservation.payment_intent_id, event)

    if event.status == FAILED:
        if reservation.deposit_status == models.DepositStatus.paid:
            logger.warning(f"Ignoring deposit failure for already paid reservation #{reservation.id}")
            return "ignored_already_paid"
        if reservation.deposit_status == models.DepositStatus.failed:
            return "already_applied"
        reservation.deposit_status = models.DepositStatus.failed
        reservation.deposit_paid = False
        session.add(reservation)
        return "deposit_failed"

    if reservation.deposit_status == models.DepositStatus.paid:
        return "already_applied"
    if reservation.deposit_amount_cents <= 0:
        raise MalformedEvent(f"reservation #{reservation.id} has no deposit to pay")
    currency = currency_for_restaurant(session.get(models.Restaurant, reservation.restaurant_id))
    _check_amount(reservation.deposit_amount_cents, currency, event)

    reservation.deposit_status = models.DepositStatus.paid
    reservation.deposit_paid = True
    reservation.paid_amount_cents = reservation.deposit_amount_cents
    reservation.paid_currency = currency
    reservation.payment_intent_id = reservation.payment_intent_id or event.intent_id
    session.add(reservation)
    return "deposit_paid"


# ============ DELIVERY ATTEMPTS ============

def _apply_delivery_attempt(session: Session, event: GatewayEvent) -> str:
    attempt = _lock(session, models.DeliveryPaymentAttempt, _entity_id(event))
    if attempt is None:
        raise MalformedEvent("delivery payment attempt not found")
    _check_intent(attempt.payment_intent_id, event)

    if event.status == FAILED:
        if attempt.delivery_order_id is not None or attempt.status == models.AttemptStatus.succeeded:
            logger.warning(f"Ignoring payment failure for promoted attempt #{attempt.id}")
            return "ignored_already_paid"
        if attempt.status == models.AttemptStatus.failed:
            return "already_applied"
        attempt.status = models.AttemptStatus.failed
        attempt.updated_at = models.utcnow()
        session.add(attempt)
        return "attempt_failed"

    if attempt.delivery_order_id is not None:
        return "already_applied"
    _check_amount(attempt.total_cents, attempt.currency, event)

    delivery_order = models.DeliveryOrder(
        restaurant_id=attempt.restaurant_id,
        user_id=attempt.user_id,
        attempt_id=attempt.id,
        delivery_address=attempt.delivery_address,
        currency=attempt.currency,
        items=list(attempt.items),
        subtotal_cents=attempt.subtotal_cents,
        delivery_fee_cents=attempt.delivery_fee_cents,
        total_cents=attempt.total_cents,
        payment_intent_id=event.intent_id or attempt.payment_intent_id,
    )
    session.add(delivery_order)
    session.flush()

    attempt.delivery_order_id = delivery_order.id
    attempt.status = models.AttemptStatus.succeeded
    attempt.updated_at = models.utcnow()
    session.add(attempt)
    return "delivery_order_created"


_HANDLERS = {
    TABLE_ORDER: _apply_table_order,
    RESERVATION_DEPOSIT: _apply_reservation_deposit,
    DELIVERY_ATTEMPT: _apply_delivery_attempt,
}


def _record(session: Session, event: GatewayEvent, outcome: str) -> None:
    if event.event_id:
        session.add(models.PaymentEvent(
            event_id=event.event_id,
            intent_id=event.intent_id,
            kind=event.metadata.get("kind"),
            outcome=outcome,
        ))


def process_gateway_event(session: Session, event: GatewayEvent) -> str:
    """Apply one gateway event and return a short outcome label."""
    if event.event_id and session.get(models.PaymentEvent, event.event_id) is not None:
        logger.info(f"Gateway event {event.event_id} already processed; skipping")
        return "replayed"

    kind = event.metadata.get("kind")
    handler = _HANDLERS.get(kind)

    try:
        if event.status not in (SUCCEEDED, FAILED):
            raise MalformedEvent(f"unsupported status {event.status!r}")
        if handler is None:
            raise MalformedEvent(f"unknown metadata.kind {kind!r}")
        outcome = handler(session, event)
    except MalformedEvent as e:
        session.rollback()
        logger.warning(f"Acknowledging unusable gateway event {event.event_id} ({event.intent_id}): {e}")
        outcome = "ignored_malformed"
    except Exception:
        session.rollback()
        raise

    _record(session, event, outcome)
    try:
        session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event id won the insert
        session.rollback()
        logger.info(f"Gateway event {event.event_id} committed concurrently; treating as replay")
        return "replayed"

    logger.info(f"Gateway event {event.event_id} ({kind}, {event.status}) -> {outcome}")
    restaurant_id = str(event.metadata.get("restaurant_id") or "")
    if outcome in ("order_paid", "delivery_order_created") and restaurant_id.isdigit():
        publish_event(int(restaurant_id), {
            "type": outcome,
            "entity_id": event.metadata.get("entity_id"),
            "intent_id": event.intent_id,
        })
    return outcome


# ============ DELIVERY CHECKOUT ============

def create_delivery_attempt(
    session: Session,
    gateway: PaymentGateway,
    restaurant_id: int,
    user: models.User,
    payload: models.DeliveryAttemptCreate,
) -> tuple[models.DeliveryPaymentAttempt, GatewayIntent]:
    """
    Price a delivery basket and open a card intent for it.

    The attempt only becomes a delivery order when the success callback
    arrives, so an unpaid basket never reaches fulfilment.
    """
    try:
        restaurant = session.get(models.Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFoundError("Restaurant not found")
        if not payload.delivery_address.strip():
            raise OrderValidationError("Delivery address is required", field="delivery_address")

        priced = price_basket(session, restaurant_id, payload.items)
        if priced.subtotal_cents < restaurant.delivery_min_order_cents:
            raise OrderValidationError(
                f"Minimum order for delivery is {restaurant.delivery_min_order_cents}",
                field="items",
                code="delivery_min_not_met",
            )

        currency = currency_for_restaurant(restaurant)
        fee = restaurant.delivery_fee_cents
        attempt = models.DeliveryPaymentAttempt(
            restaurant_id=restaurant_id,
            user_id=user.id,
            delivery_address=payload.delivery_address.strip(),
            currency=currency,
            items=[line.model_dump() for line in priced.lines],
            subtotal_cents=priced.subtotal_cents,
            delivery_fee_cents=fee,
            total_cents=priced.subtotal_cents + fee,
        )
        session.add(attempt)
        session.flush()

        intent = gateway.create_intent(
            restaurant,
            attempt.total_cents,
            currency,
            metadata={
                "kind": DELIVERY_ATTEMPT,
                "entity_id": attempt.id,
                "restaurant_id": restaurant_id,
                "user_id": user.id,
            },
            description=f"Delivery from {restaurant.name}",
        )
        attempt.payment_intent_id = intent.intent_id
        session.add(attempt)
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(attempt)
    logger.info(f"Delivery attempt #{attempt.id} for user {user.id}: total={attempt.total_cents} {currency}")
    return attempt, intent
