"""
Order cancellation.

Cancelling touches the order and its session in one transaction: the status
change, the totals reversal and the last-activity marker commit together or
not at all.
"""

import logging

from sqlmodel import Session

from . import models
from .errors import NotFoundError, StateConflictError
from .ledger_service import lock_session, recompute_last_order_at, remove_order_total
from .notifications import publish_event
from .order_service import lock_order, release_ready_flag

logger = logging.getLogger(__name__)


def cancel_order(
    session: Session,
    order_id: int,
    restaurant_id: int,
    cancelled_by: str = "staff",
) -> models.Order:
    try:
        order = lock_order(session, order_id)
        if order.restaurant_id != restaurant_id:
            raise NotFoundError("Order not found")

        if order.status == models.OrderStatus.cancelled:
            session.rollback()
            return order
        if order.kitchen_status == models.KitchenStatus.delivered:
            raise StateConflictError("Delivered orders cannot be cancelled")
        if (
            order.payment_method == models.PaymentMethod.card
            and order.payment_status == models.PaymentStatus.paid
        ):
            raise StateConflictError("Order was paid by card; issue a refund instead of cancelling")

        was_counted = order.is_counted()
        was_ready = order.kitchen_status == models.KitchenStatus.ready

        order.status = models.OrderStatus.cancelled
        order.cancelled_at = models.utcnow()
        order.cancelled_by = cancelled_by
        session.add(order)

        try:
            table_session = lock_session(session, order.session_id)
        except NotFoundError:
            logger.error(f"Ledger integrity: order #{order.id} points at missing session #{order.session_id}")
            raise
        if was_counted:
            remove_order_total(session, table_session, order.total_cents, order.payment_method)
        recompute_last_order_at(session, table_session)
        if was_ready:
            release_ready_flag(session, table_session.id)

        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(order)
    session.refresh(table_session)
    logger.info(
        f"Cancelled order #{order.id} by {cancelled_by}; session #{table_session.id} "
        f"grand_total={table_session.grand_total_cents}"
    )
    publish_event(restaurant_id, {
        "type": "order_cancelled",
        "order_id": order.id,
        "table_id": order.table_id,
        "cancelled_by": cancelled_by,
        "totals": table_session.totals(),
    }, table_id=order.table_id)
    return order
