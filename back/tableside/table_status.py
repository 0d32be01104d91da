"""
Live table status.

One pure function decides what a table looks like to staff. Every read path
(dashboard list, single table, public QR view) goes through it, and nothing
stores the result as ground truth.
"""

from enum import Enum

from sqlmodel import Session, select

from . import models


class TableStatus(str, Enum):
    empty = "empty"
    occupied = "occupied"
    order_active = "order_active"
    order_ready = "order_ready"
    waiter_call = "waiter_call"
    bill_request = "bill_request"


# Highest precedence first
_REQUEST_PRECEDENCE = [
    (models.ServiceRequestType.bill, TableStatus.bill_request),
    (models.ServiceRequestType.waiter, TableStatus.waiter_call),
    (models.ServiceRequestType.order_ready, TableStatus.order_ready),
]


def derive_table_status(
    table: models.Table,
    open_session: models.TableSession | None,
    open_requests: list[models.ServiceRequest],
) -> TableStatus:
    if open_session is None or open_session.status != models.SessionStatus.open:
        base = TableStatus.empty
    elif open_session.grand_total_cents > 0:
        base = TableStatus.order_active
    else:
        base = TableStatus.occupied

    pending = {
        request.type
        for request in open_requests
        if request.table_id == table.id and request.status == models.ServiceRequestStatus.open
    }
    for request_type, status in _REQUEST_PRECEDENCE:
        if request_type in pending:
            return status
    return base


def table_status_view(
    table: models.Table,
    open_session: models.TableSession | None,
    open_requests: list[models.ServiceRequest],
) -> dict:
    status = derive_table_status(table, open_session, open_requests)
    own_requests = [
        r for r in open_requests
        if r.table_id == table.id and r.status == models.ServiceRequestStatus.open
    ]
    return {
        "table_id": table.id,
        "name": table.name,
        "seat_count": table.seat_count,
        "is_active": table.is_active,
        "status": status.value,
        "has_active_session": open_session is not None,
        "session_id": open_session.id if open_session else None,
        "currency": open_session.currency if open_session else None,
        "totals": open_session.totals() if open_session else {
            "card_total_cents": 0,
            "pay_at_venue_total_cents": 0,
            "grand_total_cents": 0,
        },
        "open_service_request_count": len(own_requests),
    }


def list_table_statuses(session: Session, restaurant_id: int) -> list[dict]:
    tables = session.exec(
        select(models.Table)
        .where(models.Table.restaurant_id == restaurant_id)
        .order_by(models.Table.id)
    ).all()
    open_sessions = session.exec(
        select(models.TableSession).where(
            models.TableSession.restaurant_id == restaurant_id,
            models.TableSession.status == models.SessionStatus.open,
        )
    ).all()
    open_requests = session.exec(
        select(models.ServiceRequest).where(
            models.ServiceRequest.restaurant_id == restaurant_id,
            models.ServiceRequest.status == models.ServiceRequestStatus.open,
        )
    ).all()

    sessions_by_table = {s.table_id: s for s in open_sessions}
    requests_by_table: dict[int, list[models.ServiceRequest]] = {}
    for request in open_requests:
        requests_by_table.setdefault(request.table_id, []).append(request)

    return [
        table_status_view(
            table,
            sessions_by_table.get(table.id),
            requests_by_table.get(table.id, []),
        )
        for table in tables
    ]


def get_table_status(session: Session, table: models.Table) -> dict:
    open_session = session.exec(
        select(models.TableSession).where(
            models.TableSession.restaurant_id == table.restaurant_id,
            models.TableSession.table_id == table.id,
            models.TableSession.status == models.SessionStatus.open,
        )
    ).first()
    open_requests = session.exec(
        select(models.ServiceRequest).where(
            models.ServiceRequest.table_id == table.id,
            models.ServiceRequest.status == models.ServiceRequestStatus.open,
        )
    ).all()
    return table_status_view(table, open_session, list(open_requests))
