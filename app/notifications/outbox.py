from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.db.models import DispatchChannel, DispatchStatus, Notification, NotificationDispatch


@dataclass(frozen=True)
class ChannelPayload:
    channel: DispatchChannel
    to: str
    body: str
    subject: str | None = None

    @classmethod
    def email(cls, to: str, subject: str, body: str) -> "ChannelPayload":
        return cls(channel=DispatchChannel.email, to=to, subject=subject, body=body)

    @classmethod
    def sms(cls, to: str, body: str) -> "ChannelPayload":
        return cls(channel=DispatchChannel.sms, to=to, body=body)


def enqueue(db: Session, notification: Notification, payloads: list[ChannelPayload]) -> list[NotificationDispatch]:
    """Add one queued dispatch row per payload to the caller's open transaction.

    Nothing is committed here: the rows must land together with the domain
    change and the in-app notification that triggered them.
    """
    rows = [
        NotificationDispatch(
            notification_id=notification.id,
            channel=payload.channel,
            recipient=payload.to,
            subject=payload.subject if payload.channel == DispatchChannel.email else None,
            body=payload.body,
            status=DispatchStatus.queued,
            attempts=0,
        )
        for payload in payloads
        if payload.to
    ]
    db.add_all(rows)
    return rows


def create_notification_with_dispatches(
    db: Session,
    *,
    user_id: str,
    kind: str,
    message: str,
    request_id: str,
    payloads: list[ChannelPayload] | None = None,
) -> Notification:
    notification = Notification(user_id=user_id, kind=kind, message=message, request_id=request_id)
    db.add(notification)
    db.flush()
    enqueue(db, notification, payloads or [])
    db.flush()
    return notification
