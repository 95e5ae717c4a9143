"""Two-stage guest approval workflow.

A stage action marks a subset of guests approved, rejected or blacklisted.
Once every guest is processed for the stage the request transitions and a
notification for the requester (with outbox dispatches) is staged in the same
transaction as the state change.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from time import perf_counter

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import AppException, CommentRequired, InvalidSelection, InvalidStage, RequestNotFound
from app.db.models import Guest, GuestDecision, RequestStatus, VisitRequest
from app.notifications.outbox import ChannelPayload, create_notification_with_dispatches
from app.services.audit_service import write_audit_log
from app.services.blacklist_service import upsert_entries_for_guests
from app.services.settings_service import SettingsSnapshot, get_settings_snapshot

logger = logging.getLogger(__name__)

KIND_REQUEST_APPROVED = "request_approved"
KIND_REQUEST_REJECTED = "request_rejected"

_BASE36 = string.digits + string.ascii_uppercase


class StageAction(str, Enum):
    approve = "approve"
    reject = "reject"
    blacklist = "blacklist"

    @property
    def decision(self) -> GuestDecision:
        return {
            StageAction.approve: GuestDecision.approved,
            StageAction.reject: GuestDecision.rejected,
            StageAction.blacklist: GuestDecision.blacklisted,
        }[self]

    @property
    def requires_comment(self) -> bool:
        return self is not StageAction.approve


@dataclass(frozen=True)
class NotificationDirective:
    recipient_user_id: str
    kind: str
    message: str


@dataclass
class StageOutcome:
    request: VisitRequest
    directive: NotificationDirective | None = None
    notification_ids: list[str] = field(default_factory=list)

    @property
    def transitioned(self) -> bool:
        return self.directive is not None


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_approval_number() -> str:
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"APV-{stamp}-{suffix}"


def request_steps(request: VisitRequest, snapshot: SettingsSnapshot) -> int:
    """Steps that govern ``request``: the recorded count once stage 1 has closed, the live setting before."""
    if request.approval_steps in (1, 2):
        return request.approval_steps
    if RequestStatus.parse(request.status) in (RequestStatus.stage2_pending, RequestStatus.stage2_rejected):
        return 2
    return snapshot.approval_steps


def final_decision(guest: Guest, approval_steps: int) -> GuestDecision:
    return guest.stage1_decision if approval_steps == 1 else guest.stage2_decision


def _stage_decision(guest: Guest, stage: int) -> GuestDecision:
    return guest.stage1_decision if stage == 1 else guest.stage2_decision


def _stage_guests(guests: list[Guest], stage: int) -> list[Guest]:
    """Guests that take part in ``stage``: everyone at stage 1, stage-1-terminal guests at stage 2."""
    if stage == 1:
        return list(guests)
    return [guest for guest in guests if guest.stage1_decision.is_terminal]


def _ensure_stage_open(request: VisitRequest, stage: int, snapshot: SettingsSnapshot) -> None:
    status = RequestStatus.parse(request.status)
    if status.is_terminal:
        raise InvalidStage(f"Request is already {status.value}")
    if stage == 1 and status not in (RequestStatus.submitted, RequestStatus.stage1_pending):
        raise InvalidStage(f"Stage 1 is closed for a request in {status.value}")
    if stage == 2 and status != RequestStatus.stage2_pending:
        if request_steps(request, snapshot) != 2:
            raise InvalidStage("Stage 2 is not enabled")
        raise InvalidStage(f"Stage 2 is not open for a request in {status.value}")


def _select_guests(guests: list[Guest], stage: int, guest_ids: list[str]) -> list[Guest]:
    wanted = set(guest_ids or [])
    if not wanted:
        raise InvalidSelection()
    eligible = {guest.id: guest for guest in _stage_guests(guests, stage)}
    selected = []
    for guest_id in wanted:
        guest = eligible.get(guest_id)
        if guest is None or _stage_decision(guest, stage).is_terminal:
            raise InvalidSelection(f"Guest {guest_id} cannot be processed at stage {stage}")
        selected.append(guest)
    return sorted(selected, key=lambda guest: guest.position)


def _load_request(db: Session, request_id: str, *, lock: bool = False) -> tuple[VisitRequest, list[Guest]]:
    query = db.query(VisitRequest).filter(VisitRequest.id == request_id)
    if lock:
        query = query.with_for_update().populate_existing()
    request = query.first()
    if not request:
        raise RequestNotFound(request_id)
    guest_query = db.query(Guest).filter(Guest.request_id == request_id).order_by(Guest.position.asc())
    if lock:
        guest_query = guest_query.with_for_update().populate_existing()
    return request, guest_query.all()


def _default_blacklist_reason(stage: int) -> str:
    return f"Blacklisted by Approver {stage}"


def _stamp_stage(request: VisitRequest, stage: int, comment: str | None, actor_id: str | None, now: datetime) -> None:
    if stage == 1:
        request.stage1_comment = comment
        request.stage1_decided_by = actor_id
        request.stage1_decided_at = now
    else:
        request.stage2_comment = comment
        request.stage2_decided_by = actor_id
        request.stage2_decided_at = now


def _transition(
    request: VisitRequest,
    guests: list[Guest],
    stage: int,
    comment: str | None,
    snapshot: SettingsSnapshot,
) -> NotificationDirective | None:
    """Recompute request status from fresh guest state; returns the requester notification, if any."""
    participants = _stage_guests(guests, stage)
    all_processed = all(_stage_decision(guest, stage).is_terminal for guest in participants)
    status = RequestStatus.parse(request.status)

    if not all_processed:
        if stage == 1 and status == RequestStatus.submitted:
            request.status = RequestStatus.stage1_pending
        return None

    any_approved = any(_stage_decision(guest, stage) == GuestDecision.approved for guest in participants)
    destination = request.destination
    if stage == 1:
        request.approval_steps = snapshot.approval_steps

    if stage == 1 and request.approval_steps == 1:
        if any_approved:
            request.status = RequestStatus.stage2_approved
            request.approval_number = request.approval_number or generate_approval_number()
            return NotificationDirective(
                recipient_user_id=request.requested_by_id,
                kind=KIND_REQUEST_APPROVED,
                message=f"Your request for {destination} has been approved! Approval Number: {request.approval_number}",
            )
        request.status = RequestStatus.stage1_rejected
        return NotificationDirective(
            recipient_user_id=request.requested_by_id,
            kind=KIND_REQUEST_REJECTED,
            message=f"Your request for {destination} has been rejected by Approver 1: {comment or 'No comment'}",
        )

    if stage == 1:
        # Two-step: always forwarded; stage 2 decides each stage-1-terminal guest.
        request.status = RequestStatus.stage2_pending
        request.approval_number = request.approval_number or generate_approval_number()
        return NotificationDirective(
            recipient_user_id=request.requested_by_id,
            kind=KIND_REQUEST_APPROVED,
            message=(
                f"Your request for {destination} has been processed by Approver 1 and forwarded to "
                f"Approver 2! Approval Number: {request.approval_number}"
            ),
        )

    if any_approved:
        request.status = RequestStatus.stage2_approved
        request.approval_number = request.approval_number or generate_approval_number()
        return NotificationDirective(
            recipient_user_id=request.requested_by_id,
            kind=KIND_REQUEST_APPROVED,
            message=f"Your request for {destination} has been fully approved! Approval Number: {request.approval_number}",
        )
    request.status = RequestStatus.stage2_rejected
    return NotificationDirective(
        recipient_user_id=request.requested_by_id,
        kind=KIND_REQUEST_REJECTED,
        message=f"Your request for {destination} has been rejected by Approver 2.",
    )


def _final_approval_payloads(request: VisitRequest, guests: list[Guest], snapshot: SettingsSnapshot) -> list[ChannelPayload]:
    number = request.approval_number
    steps = request_steps(request, snapshot)
    dates = f"{request.from_date.isoformat()} to {request.to_date.isoformat()}"
    payloads: list[ChannelPayload] = []
    if snapshot.email_notifications and request.requested_by_email:
        payloads.append(
            ChannelPayload.email(
                request.requested_by_email,
                f"Visit Request Approved - {number}",
                (
                    f"Your visit request has been approved! Approval Number: {number}. Gate: {request.gate}. "
                    f"Date: {dates}. Please present this approval number at reception."
                ),
            )
        )
    for guest in guests:
        if final_decision(guest, steps) != GuestDecision.approved:
            continue
        body = (
            f"Dear {guest.name}, your visit to {request.destination} has been approved! "
            f"Approval Number: {number}. Gate: {request.gate}. Date: {dates}."
        )
        if snapshot.email_notifications and guest.email:
            payloads.append(ChannelPayload.email(guest.email, f"Visit Approved - {number}", body))
        if snapshot.sms_notifications and guest.phone:
            payloads.append(ChannelPayload.sms(guest.phone, body))
    return payloads


def _requester_update_payloads(request: VisitRequest, message: str, snapshot: SettingsSnapshot) -> list[ChannelPayload]:
    if not (snapshot.email_notifications and request.requested_by_email):
        return []
    return [ChannelPayload.email(request.requested_by_email, f"Visit Request Update - {request.destination}", message)]


def apply_stage_action(
    db: Session,
    request_id: str,
    stage: int,
    guest_ids: list[str],
    action: StageAction | str,
    comment: str | None = None,
    *,
    actor_id: str | None = None,
    snapshot: SettingsSnapshot | None = None,
) -> StageOutcome:
    started = perf_counter()
    phase = "validate"
    try:
        if stage not in (1, 2):
            raise AppException(f"Unknown stage {stage}", status_code=400)
        try:
            action = StageAction(action)
        except ValueError:
            raise AppException(f"Unknown action {action}", status_code=400) from None
        comment = (comment or "").strip() or None
        snapshot = snapshot or get_settings_snapshot(db)

        request, guests = _load_request(db, request_id)
        _ensure_stage_open(request, stage, snapshot)
        selected = _select_guests(guests, stage, guest_ids)
        if action.requires_comment and not comment:
            raise CommentRequired()

        if action is StageAction.blacklist:
            phase = "blacklist_upsert"
            upsert_entries_for_guests(db, selected, comment or _default_blacklist_reason(stage))

        phase = "apply"
        # Re-read under a row lock; the decision is made from fresh guest state only.
        request, guests = _load_request(db, request_id, lock=True)
        _ensure_stage_open(request, stage, snapshot)
        selected = _select_guests(guests, stage, guest_ids)

        now = datetime.utcnow()
        decision = action.decision
        for guest in selected:
            if stage == 1:
                guest.stage1_decision = decision
                guest.stage1_comment = comment
            else:
                guest.stage2_decision = decision
                guest.stage2_comment = comment

        directive = _transition(request, guests, stage, comment, snapshot)
        if directive is not None:
            _stamp_stage(request, stage, comment, actor_id, now)
        request.updated_at = now

        outcome = StageOutcome(request=request, directive=directive)
        if directive is not None:
            phase = "stage_notification"
            if RequestStatus.parse(request.status) == RequestStatus.stage2_approved:
                payloads = _final_approval_payloads(request, guests, snapshot)
            else:
                payloads = _requester_update_payloads(request, directive.message, snapshot)
            notification = create_notification_with_dispatches(
                db,
                user_id=directive.recipient_user_id,
                kind=directive.kind,
                message=directive.message,
                request_id=request.id,
                payloads=payloads,
            )
            outcome.notification_ids.append(notification.id)

        phase = "commit"
        try:
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            raise InvalidStage("Request was updated by another approver; reload and try again") from exc

        phase = "audit"
        write_audit_log(
            db,
            actor_id,
            f"STAGE{stage}_{action.value.upper()}",
            "Request",
            request.id,
            {"guestIds": [guest.id for guest in selected], "status": request.status.value, "comment": comment},
        )

        logger.info(
            "stage.action completed in %.1fms phase=%s request_id=%s stage=%s action=%s status=%s",
            (perf_counter() - started) * 1000,
            phase,
            request.id,
            stage,
            action.value,
            request.status.value,
        )
        return outcome
    except Exception:
        db.rollback()
        logger.warning(
            "stage.action failed in %.1fms phase=%s request_id=%s stage=%s",
            (perf_counter() - started) * 1000,
            phase,
            request_id,
            stage,
        )
        raise
