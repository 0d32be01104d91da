import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from . import models
from .db import get_session
from .ledger_service import open_session, session_to_dict
from .order_service import create_order, serialize_order
from .payment_gateway import PaymentGateway, get_gateway
from .security import get_current_staff, get_optional_user
from .service_request_service import create_request
from .table_status import get_table_status, list_table_statuses

logger = logging.getLogger(__name__)

router = APIRouter()


def _staff_table(session: Session, table_id: int, staff: models.User) -> models.Table:
    table = session.get(models.Table, table_id)
    if not table or table.restaurant_id != staff.restaurant_id:
        raise HTTPException(status_code=404, detail="Table not found")
    return table


def _table_by_token(session: Session, table_token: str) -> models.Table:
    table = session.exec(select(models.Table).where(models.Table.token == table_token)).first()
    if not table:
        raise HTTPException(status_code=404, detail="Table not found")
    return table


def _order_response(order: models.Order, intent) -> dict:
    data = serialize_order(order)
    if intent is not None:
        data["client_secret"] = intent.client_secret
        data["payment_intent_id"] = intent.intent_id
        data["publishable_key"] = intent.publishable_key
    return data


# ============ STAFF ============

@router.get("/tables/status")
def list_tables_with_status(
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> list[dict]:
    """Dashboard view: every table of the restaurant with its derived status."""
    return list_table_statuses(session, current_user.restaurant_id)


@router.get("/tables/{table_id}/status")
def table_status(
    table_id: int,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> dict:
    table = _staff_table(session, table_id, current_user)
    return get_table_status(session, table)


@router.post("/tables/{table_id}/session")
def open_table_session(
    table_id: int,
    body: models.SessionOpen,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> dict:
    """Open the table's session, or return the one already open."""
    table = _staff_table(session, table_id, current_user)
    table_session = open_session(session, table.restaurant_id, table.id, body.reservation_id)
    return session_to_dict(table_session)


@router.post("/tables/{table_id}/walk-in")
def create_walk_in_order(
    table_id: int,
    body: models.WalkInOrderCreate,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict:
    """Staff-entered order for guests without a phone; always paid at the venue."""
    table = _staff_table(session, table_id, current_user)
    payload = models.OrderCreate(
        items=body.items,
        payment_method=models.PaymentMethod.venue,
        source=models.OrderSource.walk_in,
        guest_name=body.guest_name,
        notes=body.notes,
    )
    order, intent = create_order(session, gateway, table, payload, channel=models.OrderSource.walk_in)
    logger.info(f"Walk-in order #{order.id} entered by user {current_user.id}")
    return _order_response(order, intent)


# ============ PUBLIC MENU ============

@router.get("/menu/{table_token}/status")
def public_table_status(
    table_token: str,
    session: Session = Depends(get_session),
) -> dict:
    """Public endpoint - what the diner's QR page shows about the table."""
    table = _table_by_token(session, table_token)
    view = get_table_status(session, table)
    return {
        "table_name": view["name"],
        "status": view["status"],
        "has_active_session": view["has_active_session"],
        "currency": view["currency"],
        "totals": view["totals"],
    }


@router.post("/menu/{table_token}/order")
def place_table_order(
    table_token: str,
    order_data: models.OrderCreate,
    current_user: Annotated[models.User | None, Depends(get_optional_user)],
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict:
    """Public endpoint - place an order on the table's open session."""
    table = _table_by_token(session, table_token)
    if not table.is_active:
        raise HTTPException(status_code=409, detail="Table is not active")
    if order_data.source == models.OrderSource.walk_in:
        raise HTTPException(status_code=400, detail="Walk-in orders are entered by staff")

    order, intent = create_order(session, gateway, table, order_data, user=current_user)
    return _order_response(order, intent)


@router.post("/menu/{table_token}/service-requests")
def request_service(
    table_token: str,
    body: models.ServiceRequestCreate,
    session: Session = Depends(get_session),
) -> dict:
    """Public endpoint - call a waiter or ask for the bill."""
    table = _table_by_token(session, table_token)
    if body.type == models.ServiceRequestType.order_ready:
        raise HTTPException(status_code=400, detail="order_ready is raised by the kitchen")

    request = create_request(session, table, body.type)
    return {
        "id": request.id,
        "type": request.type.value,
        "status": request.status.value,
        "table_id": request.table_id,
        "session_id": request.session_id,
        "created_at": request.created_at.isoformat(),
    }
