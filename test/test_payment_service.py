from datetime import timedelta

import pytest
from sqlmodel import select

from tableside import models
from tableside.errors import GatewayUnavailableError, OrderValidationError
from tableside.order_service import create_order
from tableside.payment_gateway import GatewayEvent
from tableside.payment_service import create_delivery_attempt, process_gateway_event


def card_order(session, gateway, seed):
    payload = models.OrderCreate(
        items=[models.OrderItemCreate(item_id=seed.salad.id)],
        payment_method=models.PaymentMethod.card,
    )
    order, intent = create_order(session, gateway, seed.table, payload)
    return order, intent


def event_for(intent_id, kind, entity_id, status="succeeded", event_id="evt_1",
              amount=None, currency="try", restaurant_id=None):
    metadata = {"kind": kind, "entity_id": str(entity_id)}
    if restaurant_id is not None:
        metadata["restaurant_id"] = str(restaurant_id)
    return GatewayEvent(
        event_id=event_id,
        intent_id=intent_id,
        status=status,
        amount_minor_units=amount,
        currency=currency,
        metadata=metadata,
    )


def session_totals(session, session_id):
    return session.get(models.TableSession, session_id).totals()


# ============ TABLE ORDERS ============

def test_card_payment_counts_once(session, seed, gateway):
    order, intent = card_order(session, gateway, seed)
    event = event_for(intent.intent_id, "table_order", order.id, amount=8000)

    assert process_gateway_event(session, event) == "order_paid"
    assert session.get(models.Order, order.id).payment_status == models.PaymentStatus.paid
    assert session_totals(session, order.session_id)["card_total_cents"] == 8000

    # Same event delivered again
    assert process_gateway_event(session, event) == "replayed"
    # Same outcome under a fresh event id
    retry = event_for(intent.intent_id, "table_order", order.id, amount=8000, event_id="evt_2")
    assert process_gateway_event(session, retry) == "already_applied"

    assert session_totals(session, order.session_id) == {
        "card_total_cents": 8000,
        "pay_at_venue_total_cents": 0,
        "grand_total_cents": 8000,
    }


def test_failure_after_success_is_ignored(session, seed, gateway):
    order, intent = card_order(session, gateway, seed)
    process_gateway_event(session, event_for(intent.intent_id, "table_order", order.id, amount=8000))

    failed = event_for(intent.intent_id, "table_order", order.id, status="failed", event_id="evt_2")
    assert process_gateway_event(session, failed) == "ignored_already_paid"
    assert session.get(models.Order, order.id).payment_status == models.PaymentStatus.paid


def test_payment_failure_marks_order(session, seed, gateway):
    order, intent = card_order(session, gateway, seed)
    failed = event_for(intent.intent_id, "table_order", order.id, status="failed")

    assert process_gateway_event(session, failed) == "order_payment_failed"
    assert session.get(models.Order, order.id).payment_status == models.PaymentStatus.failed
    assert session_totals(session, order.session_id)["grand_total_cents"] == 0


def test_amount_mismatch_is_acknowledged_without_effect(session, seed, gateway):
    order, intent = card_order(session, gateway, seed)
    event = event_for(intent.intent_id, "table_order", order.id, amount=100)

    assert process_gateway_event(session, event) == "ignored_malformed"
    assert session.get(models.Order, order.id).payment_status == models.PaymentStatus.pending
    assert session.get(models.PaymentEvent, "evt_1").outcome == "ignored_malformed"


def test_foreign_intent_is_acknowledged_without_effect(session, seed, gateway):
    order, _ = card_order(session, gateway, seed)
    event = event_for("pi_somebody_else", "table_order", order.id, amount=8000)

    assert process_gateway_event(session, event) == "ignored_malformed"
    assert session.get(models.Order, order.id).payment_status == models.PaymentStatus.pending


@pytest.mark.parametrize("metadata", [
    {},
    {"kind": "gift_card", "entity_id": "1"},
    {"kind": "table_order"},
    {"kind": "table_order", "entity_id": "not-a-number"},
    {"kind": "table_order", "entity_id": "999999"},
])
def test_unusable_metadata_is_acknowledged(session, seed, metadata):
    event = GatewayEvent(event_id="evt_x", intent_id="pi_x", status="succeeded", metadata=metadata)
    assert process_gateway_event(session, event) == "ignored_malformed"


def test_payment_after_cancel_is_not_counted(session, seed, gateway):
    from tableside.cancellation_service import cancel_order

    order, intent = card_order(session, gateway, seed)
    cancel_order(session, order.id, seed.restaurant.id)

    event = event_for(intent.intent_id, "table_order", order.id, amount=8000)
    assert process_gateway_event(session, event) == "paid_after_cancel"

    order = session.get(models.Order, order.id)
    assert order.payment_status == models.PaymentStatus.paid
    assert order.status == models.OrderStatus.cancelled
    assert session_totals(session, order.session_id)["grand_total_cents"] == 0


# ============ RESERVATION DEPOSITS ============

def test_reservation_deposit(session, seed):
    reservation = models.Reservation(
        restaurant_id=seed.restaurant.id,
        user_id=seed.diner.id,
        date_time_utc=models.utcnow() + timedelta(days=1),
        deposit_amount_cents=2000,
    )
    session.add(reservation)
    session.commit()

    event = event_for("pi_dep", "reservation_deposit", reservation.id, amount=2000)
    assert process_gateway_event(session, event) == "deposit_paid"

    reservation = session.get(models.Reservation, reservation.id)
    assert reservation.deposit_paid is True
    assert reservation.deposit_status == models.DepositStatus.paid
    assert reservation.paid_amount_cents == 2000
    assert reservation.paid_currency == "TRY"
    assert reservation.payment_intent_id == "pi_dep"

    failed = event_for("pi_dep", "reservation_deposit", reservation.id, status="failed", event_id="evt_2")
    assert process_gateway_event(session, failed) == "ignored_already_paid"


def deposit_reservation(session, seed, intent_id="pi_dep"):
    reservation = models.Reservation(
        restaurant_id=seed.restaurant.id,
        user_id=seed.diner.id,
        date_time_utc=models.utcnow() + timedelta(days=1),
        deposit_amount_cents=5000,
        payment_intent_id=intent_id,
    )
    session.add(reservation)
    session.commit()
    return reservation


@pytest.mark.parametrize("intent_id, amount, currency", [
    ("pi_dep", 1, "try"),
    ("pi_dep", 5000, "usd"),
    ("pi_other", 5000, "try"),
    ("pi_other", 1, "usd"),
])
def test_deposit_mismatch_is_acknowledged_without_effect(session, seed, intent_id, amount, currency):
    reservation = deposit_reservation(session, seed)
    event = event_for(intent_id, "reservation_deposit", reservation.id, amount=amount, currency=currency)

    assert process_gateway_event(session, event) == "ignored_malformed"

    reservation = session.get(models.Reservation, reservation.id)
    assert reservation.deposit_paid is False
    assert reservation.deposit_status == models.DepositStatus.pending
    assert reservation.paid_amount_cents == 0
    assert reservation.paid_currency is None
    assert reservation.payment_intent_id == "pi_dep"


def test_deposit_failure_keeps_stored_intent(session, seed):
    reservation = deposit_reservation(session, seed)

    foreign = event_for("pi_other", "reservation_deposit", reservation.id, status="failed")
    assert process_gateway_event(session, foreign) == "ignored_malformed"

    failed = event_for("pi_dep", "reservation_deposit", reservation.id, status="failed", event_id="evt_2")
    assert process_gateway_event(session, failed) == "deposit_failed"

    reservation = session.get(models.Reservation, reservation.id)
    assert reservation.deposit_status == models.DepositStatus.failed
    assert reservation.payment_intent_id == "pi_dep"


def test_reservation_without_deposit_rejects_payment(session, seed):
    reservation = models.Reservation(
        restaurant_id=seed.restaurant.id,
        user_id=seed.diner.id,
        date_time_utc=models.utcnow() + timedelta(days=1),
    )
    session.add(reservation)
    session.commit()

    event = event_for("pi_dep", "reservation_deposit", reservation.id, amount=0)
    assert process_gateway_event(session, event) == "ignored_malformed"
    assert session.get(models.Reservation, reservation.id).deposit_paid is False


# ============ DELIVERY ============

def delivery_payload(seed, quantity=1):
    return models.DeliveryAttemptCreate(
        items=[models.OrderItemCreate(item_id=seed.soup.id, quantity=quantity)],
        delivery_address="Moda Cd. 12, Kadikoy",
    )


def test_delivery_attempt_adds_fee_and_opens_intent(session, seed, gateway):
    attempt, intent = create_delivery_attempt(
        session, gateway, seed.restaurant.id, seed.diner, delivery_payload(seed)
    )

    assert attempt.subtotal_cents == 6000
    assert attempt.delivery_fee_cents == 500
    assert attempt.total_cents == 6500
    assert attempt.status == models.AttemptStatus.pending
    assert attempt.payment_intent_id == intent.intent_id
    assert attempt.items[0]["title"] == "Soup"
    assert gateway.calls[0]["metadata"]["kind"] == "delivery_attempt"
    assert gateway.calls[0]["amount"] == 6500


def test_delivery_minimum_order(session, seed, gateway):
    seed.restaurant.delivery_min_order_cents = 10000
    session.add(seed.restaurant)
    session.commit()

    with pytest.raises(OrderValidationError) as exc:
        create_delivery_attempt(session, gateway, seed.restaurant.id, seed.diner, delivery_payload(seed))
    assert exc.value.code == "delivery_min_not_met"


def test_delivery_gateway_failure_keeps_nothing(session, seed, gateway):
    gateway.fail = True
    with pytest.raises(GatewayUnavailableError):
        create_delivery_attempt(session, gateway, seed.restaurant.id, seed.diner, delivery_payload(seed))
    assert session.exec(select(models.DeliveryPaymentAttempt)).all() == []


def test_delivery_success_promotes_exactly_once(session, seed, gateway):
    attempt, intent = create_delivery_attempt(
        session, gateway, seed.restaurant.id, seed.diner, delivery_payload(seed, quantity=2)
    )
    event = event_for(intent.intent_id, "delivery_attempt", attempt.id, amount=12500)

    assert process_gateway_event(session, event) == "delivery_order_created"
    retry = event_for(intent.intent_id, "delivery_attempt", attempt.id, amount=12500, event_id="evt_2")
    assert process_gateway_event(session, retry) == "already_applied"

    (delivery_order,) = session.exec(select(models.DeliveryOrder)).all()
    attempt = session.get(models.DeliveryPaymentAttempt, attempt.id)
    assert attempt.status == models.AttemptStatus.succeeded
    assert attempt.delivery_order_id == delivery_order.id
    assert delivery_order.total_cents == 12500
    assert delivery_order.payment_status == models.PaymentStatus.paid
    assert delivery_order.items == attempt.items


def test_delivery_failure_never_creates_an_order(session, seed, gateway):
    attempt, intent = create_delivery_attempt(
        session, gateway, seed.restaurant.id, seed.diner, delivery_payload(seed)
    )
    failed = event_for(intent.intent_id, "delivery_attempt", attempt.id, status="failed")

    assert process_gateway_event(session, failed) == "attempt_failed"
    assert session.exec(select(models.DeliveryOrder)).all() == []
    assert session.get(models.DeliveryPaymentAttempt, attempt.id).status == models.AttemptStatus.failed


def test_attempt_statuses_are_the_ones_callbacks_set():
    assert [s.value for s in models.AttemptStatus] == ["pending", "succeeded", "failed"]
