from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.exceptions import AppException
from app.db.models import DispatchChannel, Notification, NotificationDispatch
from app.notifications.providers.base import EmailPayload, SmsPayload
from app.notifications.providers.registry import ProviderRegistry
from app.services.settings_service import get_settings_snapshot


def serialize_notification(row: Notification) -> dict[str, Any]:
    return {
        "id": row.id,
        "kind": row.kind,
        "message": row.message,
        "requestId": row.request_id,
        "read": row.read_at is not None,
        "readAt": row.read_at.isoformat() if row.read_at else None,
        "createdAt": row.created_at.isoformat(),
    }


def serialize_dispatch(row: NotificationDispatch) -> dict[str, Any]:
    return {
        "id": row.id,
        "notificationId": row.notification_id,
        "channel": row.channel.value,
        "recipient": row.recipient,
        "subject": row.subject,
        "status": row.status.value,
        "attempts": row.attempts,
        "lastError": row.last_error,
        "provider": row.provider,
        "providerMessageId": row.provider_message_id,
        "lastAttemptAt": row.last_attempt_at.isoformat() if row.last_attempt_at else None,
        "createdAt": row.created_at.isoformat(),
    }


def list_notifications(db: Session, user_id: str) -> list[dict[str, Any]]:
    rows = (
        db.query(Notification)
        .filter(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
        .limit(50)
        .all()
    )
    return [serialize_notification(row) for row in rows]


def mark_notification_read(db: Session, user_id: str, notification_id: str) -> dict[str, Any]:
    row = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if not row:
        raise AppException("Notification not found", status_code=404)
    row.read_at = row.read_at or datetime.utcnow()
    db.commit()
    return serialize_notification(row)


def mark_all_notifications_read(db: Session, user_id: str) -> int:
    rows = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.read_at.is_(None))
        .all()
    )
    if not rows:
        return 0
    now = datetime.utcnow()
    for row in rows:
        row.read_at = now
    db.commit()
    return len(rows)


def list_dispatches(db: Session, notification_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
    query = db.query(NotificationDispatch)
    if notification_id:
        query = query.filter(NotificationDispatch.notification_id == notification_id)
    rows = query.order_by(NotificationDispatch.created_at.desc()).limit(limit).all()
    return [serialize_dispatch(row) for row in rows]


def _test_registry(db: Session, overrides: dict[str, Any] | None, env: Settings | None) -> ProviderRegistry:
    snapshot = get_settings_snapshot(db).with_overrides(**(overrides or {}))
    return ProviderRegistry(snapshot, env or get_settings())


async def send_test_email(
    db: Session,
    to: str,
    overrides: dict[str, Any] | None = None,
    env: Settings | None = None,
) -> dict[str, Any]:
    """Send one message through the provider the current settings resolve to."""
    try:
        provider = _test_registry(db, overrides, env).get(DispatchChannel.email)
        result = await provider.send(
            EmailPayload(
                to=to,
                subject="VMS3 SMTP Test",
                text="This is a test email to verify your SMTP configuration.",
            )
        )
        return {"ok": True, "provider": result.provider}
    except Exception as exc:
        return {"ok": False, "error": str(exc)}


async def send_test_sms(
    db: Session,
    to: str,
    overrides: dict[str, Any] | None = None,
    env: Settings | None = None,
) -> dict[str, Any]:
    try:
        provider = _test_registry(db, overrides, env).get(DispatchChannel.sms)
        result = await provider.send(SmsPayload(to=to, message="VMS3 SMS Test: Gateway connection verified."))
        return {"ok": True, "provider": result.provider}
    except Exception as exc:
        return {"ok": False, "error": str(exc)}
