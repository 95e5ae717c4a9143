from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_scheduler, require_roles
from app.db.models import User, UserRole
from app.db.session import get_db
from app.notifications.dispatcher import Scheduler
from app.notifications.emitters import emit_emergency_panic
from app.notifications.events import EmergencyPanicEvent
from app.schemas.jobs import PanicRequest
from app.services.audit_service import write_audit_log

router = APIRouter()


@router.post("/panic")
async def trigger_panic(
    payload: PanicRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(UserRole.reception, UserRole.admin)),
    scheduler: Scheduler = Depends(get_scheduler),
):
    payload = payload or PanicRequest()
    event = EmergencyPanicEvent(
        triggered_by_user_id=user.id,
        location=(payload.location or "").strip() or None,
        message=(payload.message or "").strip() or None,
    )
    created = await emit_emergency_panic(db, event, scheduler=scheduler)
    write_audit_log(db, user.id, "PANIC", "Security", None, {"location": event.location, "notifications": len(created)})
    return {"data": {"ok": True, "notifications": len(created), "timestamp": event.timestamp}}
