from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.db.models import User
from app.db.session import get_db
from app.services.notification_service import (
    list_notifications,
    mark_all_notifications_read,
    mark_notification_read,
)

router = APIRouter()


@router.get("")
def notifications(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return {"data": list_notifications(db, user.id)}


@router.post("/read-all")
def read_all_notifications(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    count = mark_all_notifications_read(db, user.id)
    return {"data": {"updated": count}}


@router.post("/{notification_id}/read")
def read_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return {"data": mark_notification_read(db, user.id, notification_id)}
