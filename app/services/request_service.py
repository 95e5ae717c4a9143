import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.core.exceptions import AppException, BlacklistedGuest, GuestNotFound, InvalidGuestState, RequestNotFound
from app.db.models import Guest, GuestDecision, RequestStatus, User, VisitRequest
from app.notifications.dispatcher import Scheduler
from app.notifications.emitters import emit_blacklist_attempt, record_checkout_confirmation
from app.notifications.events import BlacklistAttemptEvent, CheckoutConfirmationEvent, GuestIdentity
from app.notifications.outbox import ChannelPayload, create_notification_with_dispatches
from app.schemas.requests import RequestCreate
from app.services.approval_service import final_decision, request_steps
from app.services.audit_service import write_audit_log
from app.services.blacklist_service import check_blacklist
from app.services.settings_service import SettingsSnapshot, get_settings_snapshot

logger = logging.getLogger(__name__)

KIND_GUEST_CHECKIN = "guest_checkin"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_guest(guest: Guest) -> dict[str, Any]:
    return {
        "id": guest.id,
        "name": guest.name,
        "organization": guest.organization,
        "email": guest.email,
        "phone": guest.phone,
        "laptop": guest.laptop,
        "mobile": guest.mobile,
        "flash": guest.flash,
        "otherDevice": guest.other_device,
        "otherDeviceDescription": guest.other_device_description,
        "idPhotoUrl": guest.id_photo_url,
        "stage1Decision": guest.stage1_decision.value,
        "stage1Comment": guest.stage1_comment,
        "stage2Decision": guest.stage2_decision.value,
        "stage2Comment": guest.stage2_comment,
        "checkInAt": _iso(guest.check_in_at),
        "checkOutAt": _iso(guest.check_out_at),
    }


def serialize_request(request: VisitRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "requestedById": request.requested_by_id,
        "requestedBy": request.requested_by_name,
        "requestedByEmail": request.requested_by_email,
        "destination": request.destination,
        "gate": request.gate,
        "fromDate": request.from_date.isoformat(),
        "toDate": request.to_date.isoformat(),
        "purpose": request.purpose,
        "status": RequestStatus.parse(request.status).value,
        "approvalNumber": request.approval_number,
        "approvalSteps": request.approval_steps,
        "stage1Comment": request.stage1_comment,
        "stage1DecidedAt": _iso(request.stage1_decided_at),
        "stage1DecidedBy": request.stage1_decided_by,
        "stage2Comment": request.stage2_comment,
        "stage2DecidedAt": _iso(request.stage2_decided_at),
        "stage2DecidedBy": request.stage2_decided_by,
        "createdAt": _iso(request.created_at),
        "updatedAt": _iso(request.updated_at),
        "guests": [serialize_guest(guest) for guest in request.guests],
    }


async def submit_request(
    db: Session,
    requester: User,
    payload: RequestCreate,
    *,
    snapshot: SettingsSnapshot | None = None,
    scheduler: Scheduler | None = None,
) -> VisitRequest:
    snapshot = snapshot or get_settings_snapshot(db)
    if not payload.guests:
        raise AppException("At least one guest is required", status_code=400)
    if payload.fromDate > payload.toDate:
        raise AppException("fromDate must not be after toDate", status_code=400)
    gate = payload.gate.strip()
    if gate not in snapshot.gates:
        raise AppException(f"Unknown gate {gate}", status_code=400)

    for guest in payload.guests:
        match = check_blacklist(
            db,
            name=guest.name,
            organization=guest.organization,
            email=guest.email,
            phone=guest.phone,
        )
        if not match["blacklisted"]:
            continue
        try:
            await emit_blacklist_attempt(
                db,
                BlacklistAttemptEvent(
                    requester_id=requester.id,
                    requester_email=requester.email,
                    requester_name=requester.full_name,
                    guest=GuestIdentity(
                        name=guest.name,
                        organization=guest.organization or None,
                        email=guest.email,
                        phone=guest.phone,
                    ),
                    matched_by=tuple(match["matchedBy"]),
                ),
                snapshot=snapshot,
                scheduler=scheduler,
            )
        except Exception:
            db.rollback()
            logger.exception("blacklist alert could not be emitted guest=%s", guest.name)
        raise BlacklistedGuest(guest.name, match["matchedBy"])

    request = VisitRequest(
        requested_by_id=requester.id,
        requested_by_email=requester.email,
        requested_by_name=requester.full_name,
        destination=payload.destination.strip(),
        gate=gate,
        from_date=payload.fromDate,
        to_date=payload.toDate,
        purpose=payload.purpose.strip(),
        status=RequestStatus.submitted,
    )
    request.guests = [
        Guest(
            position=index,
            name=guest.name,
            organization=guest.organization.strip(),
            email=(guest.email or "").strip() or None,
            phone=(guest.phone or "").strip() or None,
            laptop=guest.laptop,
            mobile=guest.mobile,
            flash=guest.flash,
            other_device=guest.otherDevice,
            other_device_description=guest.otherDeviceDescription,
            id_photo_url=guest.idPhotoUrl,
            stage1_decision=GuestDecision.unset,
            stage2_decision=GuestDecision.unset,
        )
        for index, guest in enumerate(payload.guests)
    ]
    db.add(request)
    db.commit()
    db.refresh(request)

    write_audit_log(db, requester.id, "CREATE", "Request", request.id, {"guests": len(request.guests), "gate": gate})
    logger.info("request submitted request_id=%s guests=%s gate=%s", request.id, len(request.guests), gate)
    return request


def get_requests(
    db: Session,
    status: str | None = None,
    gate: str | None = None,
    requested_by_id: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    query = db.query(VisitRequest)
    if requested_by_id:
        query = query.filter(VisitRequest.requested_by_id == requested_by_id)
    if status:
        try:
            query = query.filter(VisitRequest.status == RequestStatus.parse(status))
        except ValueError as exc:
            raise AppException(f"Unknown status {status}", status_code=400) from exc
    if gate:
        query = query.filter(VisitRequest.gate == gate)
    rows = query.order_by(VisitRequest.created_at.desc()).limit(limit).all()
    return [serialize_request(row) for row in rows]


def get_request(db: Session, request_id: str) -> VisitRequest:
    request = db.query(VisitRequest).filter(VisitRequest.id == request_id).first()
    if not request:
        raise RequestNotFound(request_id)
    return request


def get_request_by_id(db: Session, request_id: str) -> dict[str, Any]:
    return serialize_request(get_request(db, request_id))


def _get_guest(db: Session, request_id: str, guest_id: str) -> tuple[VisitRequest, Guest]:
    request = get_request(db, request_id)
    guest = db.query(Guest).filter(Guest.id == guest_id, Guest.request_id == request_id).first()
    if not guest:
        raise GuestNotFound(guest_id)
    return request, guest


def check_in_guest(
    db: Session,
    request_id: str,
    guest_id: str,
    *,
    actor_id: str | None = None,
    snapshot: SettingsSnapshot | None = None,
) -> tuple[Guest, list[str]]:
    """Stamp check-in; returns the guest and the notification ids to schedule."""
    snapshot = snapshot or get_settings_snapshot(db)
    request, guest = _get_guest(db, request_id, guest_id)
    if RequestStatus.parse(request.status) != RequestStatus.stage2_approved:
        raise InvalidGuestState("Only approved requests can be checked in")
    if final_decision(guest, request_steps(request, snapshot)) != GuestDecision.approved:
        raise InvalidGuestState(f"Guest {guest.name} is not approved")
    if guest.check_in_at is not None:
        raise InvalidGuestState(f"Guest {guest.name} is already checked in")

    guest.check_in_at = datetime.utcnow()
    notification_ids: list[str] = []
    if snapshot.check_in_out_notifications:
        org = f" from {guest.organization}" if guest.organization else ""
        message = f"Guest {guest.name}{org} has checked in at Gate {request.gate}."
        payloads = []
        if snapshot.email_notifications and request.requested_by_email:
            payloads.append(ChannelPayload.email(request.requested_by_email, "Guest Check-In Alert", message))
        notification = create_notification_with_dispatches(
            db,
            user_id=request.requested_by_id,
            kind=KIND_GUEST_CHECKIN,
            message=message,
            request_id=request.id,
            payloads=payloads,
        )
        notification_ids.append(notification.id)
    db.commit()

    write_audit_log(db, actor_id, "CHECK_IN", "Guest", guest.id, {"requestId": request.id})
    return guest, notification_ids


def check_out_guest(
    db: Session,
    request_id: str,
    guest_id: str,
    *,
    actor_id: str | None = None,
    snapshot: SettingsSnapshot | None = None,
) -> tuple[Guest, list[str]]:
    snapshot = snapshot or get_settings_snapshot(db)
    request, guest = _get_guest(db, request_id, guest_id)
    if guest.check_in_at is None:
        raise InvalidGuestState(f"Guest {guest.name} has not checked in")
    if guest.check_out_at is not None:
        raise InvalidGuestState(f"Guest {guest.name} is already checked out")

    guest.check_out_at = datetime.utcnow()
    notification_ids: list[str] = []
    if snapshot.check_in_out_notifications:
        notification = record_checkout_confirmation(
            db,
            CheckoutConfirmationEvent(
                request_id=request.id,
                requester_id=request.requested_by_id,
                guest_id=guest.id,
                guest=GuestIdentity(name=guest.name, email=guest.email, phone=guest.phone),
            ),
            snapshot,
        )
        notification_ids.append(notification.id)
    db.commit()

    write_audit_log(db, actor_id, "CHECK_OUT", "Guest", guest.id, {"requestId": request.id})
    return guest, notification_ids
