import hmac
import logging
from datetime import timedelta

from fastapi import APIRouter, Body, Depends, Header
from sqlalchemy.orm import Session

from app.api.deps import get_scheduler
from app.core.config import Settings, get_settings
from app.core.exceptions import AppException, DispatchNotConfigured, Unauthorized
from app.db.session import get_db
from app.notifications.dispatcher import Scheduler, process_notification, requeue_stale_dispatches, schedule_many
from app.notifications.emitters import run_pending_approval_reminders
from app.schemas.jobs import DispatchJobRequest, RequeueStaleRequest

router = APIRouter()
logger = logging.getLogger(__name__)


def verify_job_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Settings:
    secret = settings.NOTIFICATIONS_DISPATCH_SECRET
    if not secret:
        raise DispatchNotConfigured()
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise Unauthorized()
    return settings


@router.post("/notifications/dispatch")
async def dispatch_notification(
    payload: DispatchJobRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(verify_job_secret),
):
    notification_id = payload.notificationId if payload else None
    if not notification_id:
        raise AppException("notificationId is required", status_code=400)
    summary = await process_notification(db, notification_id, env=settings)
    logger.info("dispatch job finished %s", summary.as_dict())
    return {"data": {"ok": True, **summary.as_dict()}}


@router.post("/approval-reminders")
async def approval_reminders(
    db: Session = Depends(get_db),
    _: Settings = Depends(verify_job_secret),
    scheduler: Scheduler = Depends(get_scheduler),
):
    return {"data": await run_pending_approval_reminders(db, scheduler=scheduler)}


@router.post("/dispatches/requeue-stale")
async def requeue_stale(
    payload: RequeueStaleRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    _: Settings = Depends(verify_job_secret),
    scheduler: Scheduler = Depends(get_scheduler),
):
    minutes = payload.olderThanMinutes if payload else RequeueStaleRequest().olderThanMinutes
    result = requeue_stale_dispatches(db, older_than=timedelta(minutes=max(minutes, 1)))
    await schedule_many(result["notificationIds"], scheduler)
    return {"data": result}
