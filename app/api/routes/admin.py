from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import require_roles
from app.db.models import User, UserRole
from app.db.session import get_db
from app.schemas.settings import BlacklistEntryPayload, GatewayTestRequest, SettingsUpdate
from app.services import blacklist_service, notification_service, settings_service
from app.services.audit_service import list_audit_logs, write_audit_log

router = APIRouter()
admin_only = require_roles(UserRole.admin)


@router.get("/settings")
def get_settings_row(
    db: Session = Depends(get_db),
    _: User = Depends(admin_only),
):
    return {"data": settings_service.get_settings_payload(db)}


@router.put("/settings")
def update_settings(
    payload: SettingsUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(admin_only),
):
    changes = payload.to_changes()
    data = settings_service.save_settings(db, changes)
    write_audit_log(
        db,
        user.id,
        "UPDATE",
        "Settings",
        "1",
        {"fields": sorted(key for key in changes if key not in settings_service.SECRET_FIELDS)},
    )
    return {"data": data}


@router.post("/settings/test-email")
async def send_email_test(
    payload: GatewayTestRequest,
    db: Session = Depends(get_db),
    _: User = Depends(admin_only),
):
    overrides = payload.overrides.to_changes() if payload.overrides else None
    return {"data": await notification_service.send_test_email(db, payload.to, overrides)}


@router.post("/settings/test-sms")
async def send_sms_test(
    payload: GatewayTestRequest,
    db: Session = Depends(get_db),
    _: User = Depends(admin_only),
):
    overrides = payload.overrides.to_changes() if payload.overrides else None
    return {"data": await notification_service.send_test_sms(db, payload.to, overrides)}


@router.get("/blacklist")
def blacklist(
    db: Session = Depends(get_db),
    _: User = Depends(admin_only),
):
    return {"data": blacklist_service.list_blacklist(db)}


@router.post("/blacklist")
def create_blacklist_entry(
    payload: BlacklistEntryPayload,
    db: Session = Depends(get_db),
    user: User = Depends(admin_only),
):
    entry = blacklist_service.save_blacklist_entry(db, payload.model_dump(exclude_unset=True))
    write_audit_log(db, user.id, "CREATE", "BlacklistEntry", entry.id, {"name": entry.name})
    return {"data": blacklist_service.serialize_entry(entry)}


@router.put("/blacklist/{entry_id}")
def update_blacklist_entry(
    entry_id: str,
    payload: BlacklistEntryPayload,
    db: Session = Depends(get_db),
    user: User = Depends(admin_only),
):
    entry = blacklist_service.save_blacklist_entry(db, payload.model_dump(exclude_unset=True), entry_id=entry_id)
    write_audit_log(db, user.id, "UPDATE", "BlacklistEntry", entry.id, {"active": entry.active})
    return {"data": blacklist_service.serialize_entry(entry)}


@router.delete("/blacklist/{entry_id}")
def delete_blacklist_entry(
    entry_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(admin_only),
):
    blacklist_service.delete_blacklist_entry(db, entry_id)
    write_audit_log(db, user.id, "DELETE", "BlacklistEntry", entry_id)
    return {"data": {"id": entry_id, "deleted": True}}


@router.get("/audit-logs")
def audit_logs(
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    _: User = Depends(admin_only),
):
    return {"data": list_audit_logs(db, limit=limit)}


@router.get("/dispatches")
def dispatches(
    notificationId: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _: User = Depends(admin_only),
):
    return {"data": notification_service.list_dispatches(db, notificationId)}
