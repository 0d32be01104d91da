"""Staff-facing table flags: call waiter, request bill, order ready."""

import logging

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import models
from .errors import NotFoundError, OrderValidationError, StateConflictError
from .notifications import publish_event

logger = logging.getLogger(__name__)


def _open_session_for_table(session: Session, table: models.Table) -> models.TableSession | None:
    return session.exec(
        select(models.TableSession).where(
            models.TableSession.restaurant_id == table.restaurant_id,
            models.TableSession.table_id == table.id,
            models.TableSession.status == models.SessionStatus.open,
        )
    ).first()


def find_open_request(
    session: Session,
    session_id: int,
    request_type: models.ServiceRequestType,
) -> models.ServiceRequest | None:
    return session.exec(
        select(models.ServiceRequest).where(
            models.ServiceRequest.session_id == session_id,
            models.ServiceRequest.type == request_type,
            models.ServiceRequest.status == models.ServiceRequestStatus.open,
        )
    ).first()


def open_request(
    session: Session,
    table: models.Table,
    request_type: models.ServiceRequestType,
    session_id: int | None = None,
) -> tuple[models.ServiceRequest, bool]:
    """
    Add an open request for a table without committing.

    Returns the request and whether it was newly created. `order_ready` is kept
    to one open request per session; the partial unique index on
    `servicerequest` rejects a second one opened concurrently, and that loser
    gets a StateConflictError to retry.
    """
    if session_id is None:
        table_session = _open_session_for_table(session, table)
        session_id = table_session.id if table_session else None

    if request_type == models.ServiceRequestType.order_ready:
        if session_id is None:
            raise OrderValidationError("An order_ready flag needs an open session", field="session_id")
        existing = find_open_request(session, session_id, request_type)
        if existing is not None:
            return existing, False

    request = models.ServiceRequest(
        restaurant_id=table.restaurant_id,
        table_id=table.id,
        session_id=session_id,
        type=request_type,
    )
    session.add(request)
    try:
        session.flush()
    except IntegrityError as e:
        logger.info(f"Concurrent {request_type.value} flag on session #{session_id}")
        raise StateConflictError("Table flags changed concurrently, please retry") from e
    return request, True


def create_request(
    session: Session,
    table: models.Table,
    request_type: models.ServiceRequestType,
    session_id: int | None = None,
) -> models.ServiceRequest:
    if session_id is not None:
        table_session = session.get(models.TableSession, session_id)
        if table_session is None or table_session.table_id != table.id:
            raise OrderValidationError("Session does not belong to this table", field="session_id")

    request, created = open_request(session, table, request_type, session_id)
    session.commit()
    session.refresh(request)

    if created:
        logger.info(f"Service request #{request.id} ({request_type.value}) opened on table {table.id}")
        publish_event(table.restaurant_id, {
            "type": "table_service_request",
            "request_id": request.id,
            "request_type": request_type.value,
            "table_id": table.id,
            "table_name": table.name,
            "session_id": request.session_id,
        }, table_id=table.id)
    return request


def mark_handled(request: models.ServiceRequest) -> bool:
    if request.status == models.ServiceRequestStatus.handled:
        return False
    request.status = models.ServiceRequestStatus.handled
    request.handled_at = models.utcnow()
    return True


def handle_request(session: Session, request_id: int, restaurant_id: int) -> models.ServiceRequest:
    request = session.get(models.ServiceRequest, request_id)
    if request is None or request.restaurant_id != restaurant_id:
        raise NotFoundError("Service request not found")

    if mark_handled(request):
        session.add(request)
        session.commit()
        session.refresh(request)
        publish_event(restaurant_id, {
            "type": "table_service_handled",
            "request_id": request.id,
            "request_type": request.type.value,
            "table_id": request.table_id,
        }, table_id=request.table_id)
    return request


def attach_unsessioned_requests(session: Session, table_id: int, session_id: int) -> int:
    """Move the table's open requests made before any session onto `session_id`."""
    requests = session.exec(
        select(models.ServiceRequest).where(
            models.ServiceRequest.table_id == table_id,
            models.ServiceRequest.session_id.is_(None),
            models.ServiceRequest.status == models.ServiceRequestStatus.open,
        )
    ).all()
    for request in requests:
        request.session_id = session_id
        session.add(request)
    return len(requests)


def handle_all_for_session(session: Session, table_session: models.TableSession) -> int:
    """
    Mark every open request of a session handled, plus any open request on
    its table that never got a session. The caller commits.
    """
    requests = session.exec(
        select(models.ServiceRequest).where(
            models.ServiceRequest.status == models.ServiceRequestStatus.open,
            or_(
                models.ServiceRequest.session_id == table_session.id,
                and_(
                    models.ServiceRequest.table_id == table_session.table_id,
                    models.ServiceRequest.session_id.is_(None),
                ),
            ),
        )
    ).all()
    for request in requests:
        mark_handled(request)
        session.add(request)
    return len(requests)


def list_open_requests(
    session: Session,
    restaurant_id: int,
    table_id: int | None = None,
) -> list[models.ServiceRequest]:
    statement = select(models.ServiceRequest).where(
        models.ServiceRequest.restaurant_id == restaurant_id,
        models.ServiceRequest.status == models.ServiceRequestStatus.open,
    )
    if table_id is not None:
        statement = statement.where(models.ServiceRequest.table_id == table_id)
    return list(session.exec(statement.order_by(models.ServiceRequest.created_at.desc())).all())
