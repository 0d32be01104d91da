"""
Session ledger.

Owns the per-table commercial session and its running totals. Other services
change totals only through `add_order_total` / `remove_order_total`, and only
while holding the session row lock from `lock_session`.
"""

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import models
from .errors import NotFoundError, OrderValidationError, StateConflictError
from .notifications import publish_event
from .service_request_service import attach_unsessioned_requests, handle_all_for_session
from .settings import settings

logger = logging.getLogger(__name__)


REGION_CURRENCIES = {
    "UK": "GBP",
    "GB": "GBP",
    "TR": "TRY",
    "US": "USD",
    "EU": "EUR",
    "MX": "MXN",
}


def currency_for_restaurant(restaurant: models.Restaurant | None) -> str:
    if restaurant is not None and restaurant.currency:
        return restaurant.currency.upper()
    region = (restaurant.region or "").upper() if restaurant is not None else ""
    return REGION_CURRENCIES.get(region, settings.default_currency.upper())


def find_open_session(
    session: Session,
    restaurant_id: int,
    table_id: int,
) -> models.TableSession | None:
    return session.exec(
        select(models.TableSession).where(
            models.TableSession.restaurant_id == restaurant_id,
            models.TableSession.table_id == table_id,
            models.TableSession.status == models.SessionStatus.open,
        )
    ).first()


def _check_reservation(session: Session, restaurant_id: int, reservation_id: int) -> None:
    reservation = session.get(models.Reservation, reservation_id)
    if reservation is None or reservation.restaurant_id != restaurant_id:
        raise OrderValidationError("Reservation not found for this restaurant", field="reservation_id")


def open_or_reuse(
    session: Session,
    restaurant_id: int,
    table_id: int,
    reservation_id: int | None = None,
) -> models.TableSession:
    """
    Return the table's open session, creating it when there is none.

    Does not commit. The partial unique index on open sessions settles two
    concurrent creators: the loser's insert fails, its transaction is rolled
    back and the winner's session is returned instead.
    """
    table = session.get(models.Table, table_id)
    if table is None or table.restaurant_id != restaurant_id:
        raise NotFoundError("Table not found")
    if not table.is_active:
        raise StateConflictError(f"Table {table.name} is not active")
    if reservation_id is not None:
        _check_reservation(session, restaurant_id, reservation_id)

    existing = find_open_session(session, restaurant_id, table_id)
    if existing is None:
        restaurant = session.get(models.Restaurant, restaurant_id)
        candidate = models.TableSession(
            restaurant_id=restaurant_id,
            table_id=table_id,
            reservation_id=reservation_id,
            currency=currency_for_restaurant(restaurant),
        )
        session.add(candidate)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            existing = find_open_session(session, restaurant_id, table_id)
            if existing is None:
                raise
            logger.info(f"Concurrent open on table {table_id}; reusing session #{existing.id}")
        else:
            attached = attach_unsessioned_requests(session, table_id, candidate.id)
            logger.info(
                f"Opened session #{candidate.id} on table {table_id} ({candidate.currency}); "
                f"attached {attached} earlier request(s)"
            )
            return candidate

    if reservation_id is not None and existing.reservation_id is None:
        existing.reservation_id = reservation_id
        session.add(existing)
        session.flush()
    return existing


def lock_session(session: Session, session_id: int) -> models.TableSession:
    """Load a session with a row lock held until the transaction ends."""
    table_session = session.exec(
        select(models.TableSession)
        .where(models.TableSession.id == session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if table_session is None:
        raise NotFoundError("Session not found")
    return table_session


def _recompute_grand_total(table_session: models.TableSession) -> None:
    table_session.grand_total_cents = (
        table_session.card_total_cents + table_session.pay_at_venue_total_cents
    )


def add_order_total(
    session: Session,
    table_session: models.TableSession,
    amount_cents: int,
    payment_method: models.PaymentMethod,
) -> None:
    if amount_cents < 0:
        raise OrderValidationError("Order total cannot be negative", field="total_cents")

    if payment_method == models.PaymentMethod.card:
        table_session.card_total_cents += amount_cents
    else:
        table_session.pay_at_venue_total_cents += amount_cents
    _recompute_grand_total(table_session)
    session.add(table_session)


def remove_order_total(
    session: Session,
    table_session: models.TableSession,
    amount_cents: int,
    payment_method: models.PaymentMethod,
) -> None:
    """Subtract an order from its bucket, never below zero."""
    if payment_method == models.PaymentMethod.card:
        bucket = "card_total_cents"
    else:
        bucket = "pay_at_venue_total_cents"

    current = getattr(table_session, bucket)
    if amount_cents > current:
        logger.error(
            f"Ledger integrity: removing {amount_cents} from {bucket}={current} "
            f"on session #{table_session.id}; clamping at zero"
        )
    setattr(table_session, bucket, max(0, current - amount_cents))
    _recompute_grand_total(table_session)
    session.add(table_session)


def recompute_last_order_at(session: Session, table_session: models.TableSession) -> None:
    latest = session.exec(
        select(func.max(models.Order.created_at)).where(
            models.Order.session_id == table_session.id,
            models.Order.status != models.OrderStatus.cancelled,
        )
    ).one()
    table_session.last_order_at = latest
    session.add(table_session)


def lock_session_orders(session: Session, session_id: int) -> list[models.Order]:
    """Row-lock every order of a session, lowest id first."""
    return list(session.exec(
        select(models.Order)
        .where(models.Order.session_id == session_id)
        .order_by(models.Order.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).all())


def close_session(session: Session, session_id: int, restaurant_id: int) -> models.TableSession:
    """
    Close a session, handle its open service requests and mark every
    still-running order delivered. One transaction.

    Order rows are locked before the session row, the same order that
    cancellation and the payment callback use.
    """
    try:
        table_session = session.get(models.TableSession, session_id)
        if table_session is None or table_session.restaurant_id != restaurant_id:
            raise NotFoundError("Session not found")

        orders = lock_session_orders(session, session_id)
        table_session = lock_session(session, session_id)
        if table_session.status == models.SessionStatus.closed:
            raise StateConflictError("Session is already closed")

        table_session.status = models.SessionStatus.closed
        table_session.closed_at = models.utcnow()
        session.add(table_session)

        handled = handle_all_for_session(session, table_session)

        running = [
            order for order in orders
            if order.status != models.OrderStatus.cancelled
            and order.kitchen_status != models.KitchenStatus.delivered
        ]
        for order in running:
            order.kitchen_status = models.KitchenStatus.delivered
            order.kitchen_status_updated_at = models.utcnow()
            session.add(order)

        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(table_session)
    logger.info(
        f"Closed session #{table_session.id} on table {table_session.table_id}: "
        f"grand_total={table_session.grand_total_cents}, "
        f"requests_handled={handled}, orders_forced_delivered={len(running)}"
    )
    publish_event(restaurant_id, {
        "type": "session_closed",
        "session_id": table_session.id,
        "table_id": table_session.table_id,
        "totals": table_session.totals(),
    }, table_id=table_session.table_id)
    return table_session


def open_session(
    session: Session,
    restaurant_id: int,
    table_id: int,
    reservation_id: int | None = None,
) -> models.TableSession:
    """Explicit open from the staff panel."""
    try:
        table_session = open_or_reuse(session, restaurant_id, table_id, reservation_id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(table_session)
    return table_session


def session_to_dict(table_session: models.TableSession) -> dict:
    return {
        "id": table_session.id,
        "restaurant_id": table_session.restaurant_id,
        "table_id": table_session.table_id,
        "reservation_id": table_session.reservation_id,
        "status": table_session.status.value,
        "currency": table_session.currency,
        "totals": table_session.totals(),
        "opened_at": table_session.opened_at.isoformat(),
        "closed_at": table_session.closed_at.isoformat() if table_session.closed_at else None,
        "last_order_at": table_session.last_order_at.isoformat() if table_session.last_order_at else None,
    }
