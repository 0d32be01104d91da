"""
Order ingestion for the three table channels (QR, walk-in, reservation-linked)
and the kitchen state machine.

Venue orders are counted in the session totals as soon as they are created.
Card orders only get a gateway intent here; they are counted when the payment
callback confirms them.
"""

import logging
from datetime import datetime, timedelta

from sqlmodel import Session, select

from . import models
from .catalog_service import price_basket
from .errors import NotFoundError, OrderValidationError, StateConflictError
from .ledger_service import add_order_total, lock_session, open_or_reuse
from .notifications import publish_event
from .payment_gateway import TABLE_ORDER, GatewayIntent, PaymentGateway
from .service_request_service import find_open_request, mark_handled, open_request
from .settings import settings

logger = logging.getLogger(__name__)


MATCHABLE_RESERVATION_STATUSES = [
    models.ReservationStatus.pending,
    models.ReservationStatus.confirmed,
    models.ReservationStatus.arrived,
]


def match_reservation(
    session: Session,
    restaurant_id: int,
    user_id: int,
    at: datetime | None = None,
) -> models.Reservation | None:
    """Nearest live reservation of this diner within the configured window."""
    at = at or models.utcnow()
    window = timedelta(minutes=settings.reservation_match_window_minutes)
    candidates = session.exec(
        select(models.Reservation).where(
            models.Reservation.restaurant_id == restaurant_id,
            models.Reservation.user_id == user_id,
            models.Reservation.status.in_(MATCHABLE_RESERVATION_STATUSES),
            models.Reservation.date_time_utc >= at - window,
            models.Reservation.date_time_utc <= at + window,
        )
    ).all()
    if not candidates:
        return None
    return min(candidates, key=lambda r: abs(models.as_utc(r.date_time_utc) - models.as_utc(at)))


def _resolve_reservation(
    session: Session,
    table: models.Table,
    payload: models.OrderCreate,
    user: models.User | None,
) -> int | None:
    if user is None:
        raise OrderValidationError("Reservation orders need a signed-in diner", field="user")

    if payload.reservation_id is None:
        reservation = match_reservation(session, table.restaurant_id, user.id)
        if reservation is None:
            logger.info(f"No reservation within window for user {user.id}; ordering unlinked")
            return None
        return reservation.id

    reservation = session.get(models.Reservation, payload.reservation_id)
    if (
        reservation is None
        or reservation.restaurant_id != table.restaurant_id
        or reservation.user_id != user.id
        or reservation.status not in MATCHABLE_RESERVATION_STATUSES
    ):
        raise OrderValidationError("Reservation cannot be used for this order", field="reservation_id")
    return reservation.id


def lock_order(session: Session, order_id: int) -> models.Order:
    order = session.exec(
        select(models.Order)
        .where(models.Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def create_order(
    session: Session,
    gateway: PaymentGateway,
    table: models.Table,
    payload: models.OrderCreate,
    user: models.User | None = None,
    channel: models.OrderSource | None = None,
) -> tuple[models.Order, GatewayIntent | None]:
    """
    Price and persist one order on the table's session.

    The session open, the order, its lines and the totals update commit
    together. If the gateway cannot create an intent for a card order nothing
    is kept and the caller retries the whole submission.
    """
    source = channel or payload.source
    payment_method = payload.payment_method
    if source == models.OrderSource.walk_in:
        payment_method = models.PaymentMethod.venue

    try:
        reservation_id = None
        if source == models.OrderSource.reservation:
            reservation_id = _resolve_reservation(session, table, payload, user)

        # Price first so a bad basket never opens a session
        priced = price_basket(session, table.restaurant_id, payload.items)
        if payment_method == models.PaymentMethod.card and priced.subtotal_cents <= 0:
            raise OrderValidationError("Card payment needs a total above zero", field="payment_method")

        table_session = open_or_reuse(session, table.restaurant_id, table.id, reservation_id)
        if payment_method == models.PaymentMethod.venue:
            payment_status = models.PaymentStatus.not_required
        else:
            payment_status = models.PaymentStatus.pending

        order = models.Order(
            restaurant_id=table.restaurant_id,
            table_id=table.id,
            session_id=table_session.id,
            source=source,
            user_id=user.id if user else None,
            guest_name=payload.guest_name,
            notes=payload.notes,
            currency=table_session.currency,
            total_cents=priced.subtotal_cents,
            payment_method=payment_method,
            payment_status=payment_status,
        )
        session.add(order)
        session.flush()
        for line in priced.lines:
            session.add(line.to_order_item(order.id))

        intent = None
        if payment_method == models.PaymentMethod.card:
            restaurant = session.get(models.Restaurant, table.restaurant_id)
            intent = gateway.create_intent(
                restaurant,
                order.total_cents,
                table_session.currency,
                metadata={
                    "kind": TABLE_ORDER,
                    "entity_id": order.id,
                    "session_id": table_session.id,
                    "restaurant_id": table.restaurant_id,
                    "table_id": table.id,
                },
                description=f"Order #{order.id} at {restaurant.name} - {table.name}",
            )
            order.payment_intent_id = intent.intent_id
            session.add(order)

        table_session = lock_session(session, table_session.id)
        if payment_method == models.PaymentMethod.venue:
            add_order_total(session, table_session, order.total_cents, payment_method)
        table_session.last_order_at = order.created_at
        session.add(table_session)

        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(order)
    logger.info(
        f"Order #{order.id} ({source.value}, {payment_method.value}) on table {table.id}: "
        f"total={order.total_cents} {order.currency}, session #{order.session_id}"
    )
    publish_event(table.restaurant_id, {
        "type": "new_order",
        "order_id": order.id,
        "source": source.value,
        "table_id": table.id,
        "table_name": table.name,
        "payment_method": payment_method.value,
        "total_cents": order.total_cents,
        "created_at": order.created_at.isoformat(),
    }, table_id=table.id)
    return order, intent


def get_order(session: Session, order_id: int, restaurant_id: int) -> models.Order:
    order = session.get(models.Order, order_id)
    if order is None or order.restaurant_id != restaurant_id:
        raise NotFoundError("Order not found")
    return order


def accept_order(session: Session, order_id: int, restaurant_id: int) -> models.Order:
    try:
        order = lock_order(session, order_id)
        if order.restaurant_id != restaurant_id:
            raise NotFoundError("Order not found")
        if order.status == models.OrderStatus.cancelled:
            raise StateConflictError("Cancelled orders cannot be accepted")
        if order.status == models.OrderStatus.new:
            order.status = models.OrderStatus.accepted
            session.add(order)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(order)
    return order


def release_ready_flag(session: Session, table_session_id: int) -> bool:
    """Handle the session's order_ready flag once no order is waiting at the pass."""
    still_ready = session.exec(
        select(models.Order).where(
            models.Order.session_id == table_session_id,
            models.Order.status != models.OrderStatus.cancelled,
            models.Order.kitchen_status == models.KitchenStatus.ready,
        )
    ).first()
    if still_ready is not None:
        return False
    request = find_open_request(session, table_session_id, models.ServiceRequestType.order_ready)
    if request is None:
        return False
    mark_handled(request)
    session.add(request)
    return True


def advance_kitchen_status(
    session: Session,
    order_id: int,
    restaurant_id: int,
    target: models.KitchenStatus,
) -> models.Order:
    """
    Move an order forward along new -> preparing -> ready -> delivered.

    Only paid or pay-at-venue orders move. Moving to the current status is a
    no-op; moving backwards is rejected.
    """
    try:
        order = lock_order(session, order_id)
        if order.restaurant_id != restaurant_id:
            raise NotFoundError("Order not found")
        if order.status == models.OrderStatus.cancelled:
            raise StateConflictError("Order is cancelled")
        if order.payment_status not in (models.PaymentStatus.paid, models.PaymentStatus.not_required):
            raise StateConflictError(
                f"Order is not paid yet (payment status: {order.payment_status.value})"
            )

        current_step = models.KITCHEN_FLOW.index(order.kitchen_status)
        target_step = models.KITCHEN_FLOW.index(target)
        if target_step < current_step:
            raise StateConflictError(
                f"Kitchen status cannot go back from {order.kitchen_status.value} to {target.value}"
            )
        if target_step == current_step:
            session.rollback()
            return order

        order.kitchen_status = target
        order.kitchen_status_updated_at = models.utcnow()
        if order.status == models.OrderStatus.new:
            order.status = models.OrderStatus.accepted
        session.add(order)

        table = session.get(models.Table, order.table_id)
        ready_flag_opened = False
        if target == models.KitchenStatus.ready:
            _, ready_flag_opened = open_request(
                session, table, models.ServiceRequestType.order_ready, order.session_id
            )
        elif target == models.KitchenStatus.delivered:
            release_ready_flag(session, order.session_id)

        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(order)
    logger.info(f"Order #{order.id} kitchen status -> {order.kitchen_status.value}")
    publish_event(restaurant_id, {
        "type": "kitchen_status",
        "order_id": order.id,
        "table_id": order.table_id,
        "table_name": table.name if table else None,
        "kitchen_status": order.kitchen_status.value,
    }, table_id=order.table_id)
    if ready_flag_opened:
        publish_event(restaurant_id, {
            "type": "order_ready",
            "order_id": order.id,
            "table_id": order.table_id,
            "table_name": table.name if table else None,
        })
    return order


def list_session_orders(session: Session, table_session_id: int) -> list[models.Order]:
    return list(session.exec(
        select(models.Order)
        .where(models.Order.session_id == table_session_id)
        .order_by(models.Order.created_at.desc(), models.Order.id.desc())
    ).all())


KITCHEN_TICKET_PAYMENT_STATUSES = [models.PaymentStatus.paid, models.PaymentStatus.not_required]


def list_kitchen_tickets(session: Session, restaurant_id: int) -> list[models.Order]:
    """Orders the kitchen still has to deliver across the restaurant, oldest first."""
    return list(session.exec(
        select(models.Order)
        .where(
            models.Order.restaurant_id == restaurant_id,
            models.Order.status != models.OrderStatus.cancelled,
            models.Order.kitchen_status != models.KitchenStatus.delivered,
            models.Order.payment_status.in_(KITCHEN_TICKET_PAYMENT_STATUSES),
        )
        .order_by(models.Order.created_at, models.Order.id)
    ).all())


def serialize_order(order: models.Order) -> dict:
    return {
        "id": order.id,
        "session_id": order.session_id,
        "table_id": order.table_id,
        "source": order.source.value,
        "user_id": order.user_id,
        "guest_name": order.guest_name,
        "notes": order.notes,
        "currency": order.currency,
        "total_cents": order.total_cents,
        "payment_method": order.payment_method.value,
        "payment_status": order.payment_status.value,
        "payment_intent_id": order.payment_intent_id,
        "status": order.status.value,
        "kitchen_status": order.kitchen_status.value,
        "created_at": order.created_at.isoformat(),
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "items": [
            {
                "id": item.id,
                "item_id": item.menu_item_id,
                "title": item.title,
                "base_price_cents": item.base_price_cents,
                "quantity": item.quantity,
                "note": item.note,
                "selected_modifiers": item.selected_modifiers,
                "unit_modifiers_total_cents": item.unit_modifiers_total_cents,
                "unit_total_cents": item.unit_total_cents,
                "line_total_cents": item.line_total_cents,
            }
            for item in order.items
        ],
    }
