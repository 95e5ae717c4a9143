import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import STAGE_ROLES, ensure_role, get_current_user, get_scheduler, require_roles
from app.core.exceptions import AppException
from app.db.models import User, UserRole
from app.db.session import get_db
from app.notifications.dispatcher import Scheduler, schedule_many
from app.schemas.requests import RequestCreate, StageActionRequest
from app.services import approval_service, request_service
from app.socket.server import emit_request_updated

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("")
async def submit_request(
    payload: RequestCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(UserRole.requester, UserRole.admin)),
    scheduler: Scheduler = Depends(get_scheduler),
):
    request = await request_service.submit_request(db, user, payload, scheduler=scheduler)
    data = request_service.serialize_request(request)
    await emit_request_updated(data)
    return {"data": data}


@router.get("")
def list_requests(
    status: str | None = Query(default=None),
    gate: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    # Requesters only see their own requests.
    requested_by_id = user.id if user.role == UserRole.requester else None
    return {"data": request_service.get_requests(db, status=status, gate=gate, requested_by_id=requested_by_id)}


@router.get("/{request_id}")
def get_request(
    request_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    data = request_service.get_request_by_id(db, request_id)
    if user.role == UserRole.requester and data["requestedById"] != user.id:
        ensure_role(user, UserRole.admin)
    return {"data": data}


@router.post("/{request_id}/stages/{stage}/actions")
async def stage_action(
    request_id: str,
    stage: int,
    payload: StageActionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    scheduler: Scheduler = Depends(get_scheduler),
):
    roles = STAGE_ROLES.get(stage)
    if roles is None:
        raise AppException(f"Unknown stage {stage}", status_code=400)
    ensure_role(user, *roles)
    outcome = approval_service.apply_stage_action(
        db,
        request_id,
        stage,
        payload.guestIds,
        payload.action,
        payload.comment,
        actor_id=user.id,
    )
    await schedule_many(outcome.notification_ids, scheduler)
    data = request_service.serialize_request(outcome.request)
    await emit_request_updated(data)
    return {
        "data": {
            "request": data,
            "transitioned": outcome.transitioned,
            "notification": (
                {"kind": outcome.directive.kind, "message": outcome.directive.message} if outcome.directive else None
            ),
        }
    }


@router.post("/{request_id}/guests/{guest_id}/check-in")
async def check_in(
    request_id: str,
    guest_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(UserRole.reception, UserRole.admin)),
    scheduler: Scheduler = Depends(get_scheduler),
):
    guest, notification_ids = request_service.check_in_guest(db, request_id, guest_id, actor_id=user.id)
    await schedule_many(notification_ids, scheduler)
    return {"data": request_service.serialize_guest(guest)}


@router.post("/{request_id}/guests/{guest_id}/check-out")
async def check_out(
    request_id: str,
    guest_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(UserRole.reception, UserRole.admin)),
    scheduler: Scheduler = Depends(get_scheduler),
):
    guest, notification_ids = request_service.check_out_guest(db, request_id, guest_id, actor_id=user.id)
    await schedule_many(notification_ids, scheduler)
    return {"data": request_service.serialize_guest(guest)}
