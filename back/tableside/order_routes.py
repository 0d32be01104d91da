from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from . import models
from .cancellation_service import cancel_order
from .db import get_session
from .ledger_service import close_session, session_to_dict
from .order_service import (
    accept_order,
    advance_kitchen_status,
    get_order,
    list_kitchen_tickets,
    list_session_orders,
    serialize_order,
)
from .security import get_current_staff

router = APIRouter()


# ============ SESSIONS ============

@router.get("/sessions/{session_id}")
def get_table_session(
    session_id: int,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> dict:
    """Session totals plus every order placed on it, newest first."""
    table_session = session.get(models.TableSession, session_id)
    if not table_session or table_session.restaurant_id != current_user.restaurant_id:
        raise HTTPException(status_code=404, detail="Session not found")

    data = session_to_dict(table_session)
    data["orders"] = [serialize_order(o) for o in list_session_orders(session, table_session.id)]
    return data


@router.post("/sessions/{session_id}/close")
def close_table_session(
    session_id: int,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> dict:
    table_session = close_session(session, session_id, current_user.restaurant_id)
    return session_to_dict(table_session)


# ============ ORDERS ============

@router.get("/kitchen/tickets")
def get_kitchen_tickets(
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> list[dict]:
    """Everything the kitchen still has to send out, oldest first."""
    return [serialize_order(o) for o in list_kitchen_tickets(session, current_user.restaurant_id)]


@router.get("/orders/{order_id}")
def get_table_order(
    order_id: int,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> dict:
    return serialize_order(get_order(session, order_id, current_user.restaurant_id))


@router.put("/orders/{order_id}/accept")
def accept_table_order(
    order_id: int,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> dict:
    order = accept_order(session, order_id, current_user.restaurant_id)
    return serialize_order(order)


@router.put("/orders/{order_id}/kitchen-status")
def update_kitchen_status(
    order_id: int,
    body: models.KitchenStatusUpdate,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> dict:
    """Move an order forward: new -> preparing -> ready -> delivered."""
    order = advance_kitchen_status(
        session, order_id, current_user.restaurant_id, body.kitchen_status
    )
    return serialize_order(order)


@router.post("/orders/{order_id}/cancel")
def cancel_table_order(
    order_id: int,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    body: models.OrderCancel | None = None,
    session: Session = Depends(get_session),
) -> dict:
    cancelled_by = body.cancelled_by if body else "staff"
    order = cancel_order(session, order_id, current_user.restaurant_id, cancelled_by)
    return serialize_order(order)
