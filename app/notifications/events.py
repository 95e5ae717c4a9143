"""Typed domain events that fan out into in-app notifications and outbox rows."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class GuestIdentity:
    name: str
    organization: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class BlacklistAttemptEvent:
    type: ClassVar[str] = "blacklist.attempt"

    requester_id: str
    guest: GuestIdentity
    matched_by: tuple[str, ...] = ()
    requester_email: str | None = None
    requester_name: str | None = None
    request_id: str | None = None
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class PendingApprovalReminderEvent:
    type: ClassVar[str] = "approval.stage1.pending-reminder"

    request_id: str
    created_at: str
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class CheckoutConfirmationEvent:
    type: ClassVar[str] = "guest.checkout.confirmation"

    request_id: str
    requester_id: str
    guest_id: str
    guest: GuestIdentity
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class EmergencyPanicEvent:
    type: ClassVar[str] = "security.panic"

    triggered_by_user_id: str
    location: str | None = None
    message: str | None = None
    timestamp: str = field(default_factory=_now_iso)
