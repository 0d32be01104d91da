from typing import Annotated

from fastapi import APIRouter, Depends
from sqlmodel import Session

from . import models
from .db import get_session
from .security import get_current_staff
from .service_request_service import handle_request, list_open_requests

router = APIRouter()


def _request_to_dict(request: models.ServiceRequest) -> dict:
    return {
        "id": request.id,
        "type": request.type.value,
        "status": request.status.value,
        "table_id": request.table_id,
        "session_id": request.session_id,
        "created_at": request.created_at.isoformat(),
        "handled_at": request.handled_at.isoformat() if request.handled_at else None,
    }


@router.get("/service-requests")
def list_service_requests(
    current_user: Annotated[models.User, Depends(get_current_staff)],
    table_id: int | None = None,
    session: Session = Depends(get_session),
) -> list[dict]:
    """Open waiter calls, bill requests and ready flags, newest first."""
    requests = list_open_requests(session, current_user.restaurant_id, table_id)
    return [_request_to_dict(r) for r in requests]


@router.put("/service-requests/{request_id}/handle")
def handle_service_request(
    request_id: int,
    current_user: Annotated[models.User, Depends(get_current_staff)],
    session: Session = Depends(get_session),
) -> dict:
    request = handle_request(session, request_id, current_user.restaurant_id)
    return _request_to_dict(request)
