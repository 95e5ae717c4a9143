import logging
from datetime import datetime, timedelta
from urllib.parse import quote

from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db.models import Notification, RequestStatus, User, UserRole, VisitRequest
from app.notifications.dispatcher import Scheduler, schedule_many
from app.notifications.events import (
    BlacklistAttemptEvent,
    CheckoutConfirmationEvent,
    EmergencyPanicEvent,
    PendingApprovalReminderEvent,
)
from app.notifications.outbox import ChannelPayload, create_notification_with_dispatches
from app.services.settings_service import SettingsSnapshot, get_settings_snapshot

logger = logging.getLogger(__name__)

KIND_BLACKLIST_ALERT = "blacklist_alert"
KIND_PENDING_REMINDER = "pending_approval_reminder"
KIND_CHECKOUT_CONFIRMATION = "guest_checkout_confirmation_sent"
KIND_EMERGENCY = "emergency_alert"

REMINDER_WINDOW = timedelta(hours=20)
REMINDER_AGE = timedelta(hours=24)
REMINDER_SWEEP_LIMIT = 200


def _active_users(db: Session, role: UserRole) -> list[User]:
    return (
        db.query(User)
        .filter(User.role == role, User.is_active.is_(True))
        .order_by(User.created_at.asc())
        .all()
    )


def _commit_each(db: Session, event_type: str, recipients: list[User], build) -> list[str]:
    """Create one notification per recipient, each in its own transaction.

    A failure for one recipient is rolled back and logged; the others still go out.
    """
    created: list[str] = []
    for user in recipients:
        try:
            notification = build(user)
            db.commit()
            created.append(notification.id)
        except Exception:
            db.rollback()
            logger.exception("notification for user_id=%s could not be recorded", user.id)
    logger.info("event=%s recorded=%s recipients=%s", event_type, len(created), len(recipients))
    return created


async def emit_blacklist_attempt(
    db: Session,
    event: BlacklistAttemptEvent,
    *,
    snapshot: SettingsSnapshot | None = None,
    scheduler: Scheduler | None = None,
) -> list[str]:
    snapshot = snapshot or get_settings_snapshot(db)
    request_id = event.request_id or "blacklist"
    guest = event.guest
    who = event.requester_name or event.requester_email or event.requester_id
    org = f" ({guest.organization})" if guest.organization else ""
    message = f"Blacklist attempt: {guest.name}{org} by {who}"
    matched = ", ".join(event.matched_by) or "unknown"

    def build(user: User) -> Notification:
        payloads = []
        if snapshot.email_notifications and user.email:
            payloads.append(
                ChannelPayload.email(
                    user.email,
                    "VMS3 Blacklist Alert",
                    f"{message}\nMatchedBy: {matched}\nTime: {event.timestamp}",
                )
            )
        return create_notification_with_dispatches(
            db,
            user_id=user.id,
            kind=KIND_BLACKLIST_ALERT,
            message=f"{message} [matched: {matched}]",
            request_id=request_id,
            payloads=payloads,
        )

    created = _commit_each(db, event.type, _active_users(db, UserRole.admin), build)
    await schedule_many(created, scheduler)
    return created


def reminder_recently_sent(db: Session, request_id: str, now: datetime | None = None) -> bool:
    since = (now or datetime.utcnow()) - REMINDER_WINDOW
    return (
        db.query(Notification.id)
        .filter(
            Notification.kind == KIND_PENDING_REMINDER,
            Notification.request_id == request_id,
            Notification.created_at > since,
        )
        .first()
        is not None
    )


async def emit_pending_approval_reminder(
    db: Session,
    event: PendingApprovalReminderEvent,
    *,
    snapshot: SettingsSnapshot | None = None,
    scheduler: Scheduler | None = None,
    now: datetime | None = None,
) -> list[str]:
    if reminder_recently_sent(db, event.request_id, now):
        logger.debug("reminder skipped request_id=%s (sent within window)", event.request_id)
        return []

    snapshot = snapshot or get_settings_snapshot(db)
    message = f"Reminder: Request {event.request_id} has been pending stage 1 approval for more than 24h."

    def build(user: User) -> Notification:
        payloads = []
        if snapshot.email_notifications and user.email:
            payloads.append(ChannelPayload.email(user.email, "VMS3 Approval Reminder", message))
        return create_notification_with_dispatches(
            db,
            user_id=user.id,
            kind=KIND_PENDING_REMINDER,
            message=message,
            request_id=event.request_id,
            payloads=payloads,
        )

    created = _commit_each(db, event.type, _active_users(db, UserRole.approver1), build)
    await schedule_many(created, scheduler)
    return created


def checkout_survey_url(request_id: str, env: Settings | None = None) -> str:
    base = (env or get_settings()).APP_BASE_URL.rstrip("/")
    if not base:
        return "/survey"
    return f"{base}/survey?requestId={quote(request_id, safe='')}"


def record_checkout_confirmation(
    db: Session,
    event: CheckoutConfirmationEvent,
    snapshot: SettingsSnapshot,
    env: Settings | None = None,
) -> Notification:
    """Stage the confirmation in the caller's transaction; the caller commits."""
    guest = event.guest
    greeting = f"Hello {guest.name}" if guest.name else "Hello"
    body = f"{greeting}, your check-out has been recorded. Please share feedback: {checkout_survey_url(event.request_id, env)}"

    payloads = []
    if snapshot.email_notifications and guest.email:
        payloads.append(ChannelPayload.email(guest.email, "VMS3 Check-out Confirmation", body))
    if snapshot.sms_notifications and guest.phone:
        payloads.append(ChannelPayload.sms(guest.phone, body))

    logger.debug("event=%s staged request_id=%s channels=%s", event.type, event.request_id, len(payloads))
    return create_notification_with_dispatches(
        db,
        user_id=event.requester_id,
        kind=KIND_CHECKOUT_CONFIRMATION,
        message=f"Check-out confirmation sent to guest {guest.name}.",
        request_id=event.request_id,
        payloads=payloads,
    )


def panic_message(event: EmergencyPanicEvent) -> str:
    lines = ["EMERGENCY (VMS3)"]
    if event.location:
        lines.append(f"Location: {event.location}")
    if event.message:
        lines.append(f"Message: {event.message}")
    lines.append(f"Time: {event.timestamp}")
    return "\n".join(lines)


async def emit_emergency_panic(
    db: Session,
    event: EmergencyPanicEvent,
    *,
    snapshot: SettingsSnapshot | None = None,
    env: Settings | None = None,
    scheduler: Scheduler | None = None,
) -> list[str]:
    snapshot = snapshot or get_settings_snapshot(db)
    phones = (env or get_settings()).security_phones
    body = panic_message(event)
    if not phones:
        logger.warning("panic raised by user_id=%s but SECURITY_PHONES is empty", event.triggered_by_user_id)

    def build(user: User) -> Notification:
        payloads = [ChannelPayload.sms(phone, body) for phone in phones] if snapshot.sms_notifications else []
        return create_notification_with_dispatches(
            db,
            user_id=user.id,
            kind=KIND_EMERGENCY,
            message=f"Emergency panic triggered by reception user {event.triggered_by_user_id}.",
            request_id="emergency",
            payloads=payloads,
        )

    created = _commit_each(db, event.type, _active_users(db, UserRole.admin), build)
    await schedule_many(created, scheduler)
    return created


async def run_pending_approval_reminders(
    db: Session,
    *,
    scheduler: Scheduler | None = None,
    now: datetime | None = None,
) -> dict:
    """Emit reminders for requests still waiting on stage 1 after a day."""
    now = now or datetime.utcnow()
    cutoff = now - REMINDER_AGE
    pending = (
        db.query(VisitRequest)
        .filter(
            VisitRequest.status.in_([RequestStatus.submitted, RequestStatus.stage1_pending]),
            VisitRequest.created_at < cutoff,
        )
        .order_by(VisitRequest.created_at.asc())
        .limit(REMINDER_SWEEP_LIMIT)
        .all()
    )
    snapshot = get_settings_snapshot(db)
    reminded = 0
    for request in pending:
        created = await emit_pending_approval_reminder(
            db,
            PendingApprovalReminderEvent(request_id=request.id, created_at=request.created_at.isoformat()),
            snapshot=snapshot,
            scheduler=scheduler,
            now=now,
        )
        if created:
            reminded += 1
    logger.info("reminder sweep scanned=%s reminded=%s", len(pending), reminded)
    return {"scanned": len(pending), "reminded": reminded}
