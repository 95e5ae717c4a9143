import re

import pytest

from app.core.exceptions import AppException, CommentRequired, InvalidSelection, InvalidStage
from app.db.models import (
    BlacklistEntry,
    DispatchChannel,
    GuestDecision,
    Notification,
    NotificationDispatch,
    RequestStatus,
)
from app.services import approval_service
from app.services.approval_service import StageAction, apply_stage_action, generate_approval_number


def _ids(request):
    return [guest.id for guest in request.guests]


def test_approval_number_format() -> None:
    number = generate_approval_number()
    assert re.fullmatch(r"APV-[0-9A-Z]+-[0-9A-Z]{4}", number)


def test_partial_stage1_action_marks_request_pending(db, make_request, two_step, approver1) -> None:
    request = make_request(guests=2)
    g1, _ = _ids(request)

    outcome = apply_stage_action(db, request.id, 1, [g1], "approve", actor_id=approver1.id, snapshot=two_step)

    assert outcome.directive is None
    assert outcome.notification_ids == []
    assert outcome.request.status == RequestStatus.stage1_pending
    assert outcome.request.approval_number is None
    assert db.query(Notification).count() == 0


def test_one_step_mixed_decisions_end_approved_with_number(db, make_request, one_step, approver1) -> None:
    request = make_request(guests=2)
    g1, g2 = _ids(request)

    apply_stage_action(db, request.id, 1, [g1], StageAction.approve, snapshot=one_step)
    outcome = apply_stage_action(db, request.id, 1, [g2], StageAction.reject, "No badge", actor_id=approver1.id, snapshot=one_step)

    request = outcome.request
    assert request.status == RequestStatus.stage2_approved
    assert request.approval_number and request.approval_number.startswith("APV-")
    assert request.stage1_decided_by == approver1.id
    assert request.stage1_comment == "No badge"
    assert outcome.directive.kind == "request_approved"
    assert request.approval_number in outcome.directive.message


def test_one_step_final_approval_dispatches_only_to_approved_guests(db, make_request, one_step) -> None:
    request = make_request(guests=2)
    g1, g2 = _ids(request)

    apply_stage_action(db, request.id, 1, [g2], "reject", "Not on list", snapshot=one_step)
    outcome = apply_stage_action(db, request.id, 1, [g1], "approve", snapshot=one_step)

    rows = db.query(NotificationDispatch).filter(NotificationDispatch.notification_id == outcome.notification_ids[0]).all()
    recipients = {(row.channel, row.recipient) for row in rows}
    assert (DispatchChannel.email, "requester@vms.test") in recipients
    assert (DispatchChannel.email, "guest1@example.com") in recipients
    assert (DispatchChannel.sms, "+15550100000") in recipients
    assert all("guest2" not in recipient for _, recipient in recipients)
    assert all(row.status.value == "queued" and row.attempts == 0 for row in rows)


def test_one_step_all_rejected_is_terminal(db, make_request, one_step) -> None:
    request = make_request(guests=1)
    (g1,) = _ids(request)

    outcome = apply_stage_action(db, request.id, 1, [g1], "reject", "Unknown visitor", snapshot=one_step)

    assert outcome.request.status == RequestStatus.stage1_rejected
    assert outcome.request.approval_number is None
    assert outcome.directive.kind == "request_rejected"
    assert "Unknown visitor" in outcome.directive.message


def test_two_step_stage1_always_forwards(db, make_request, two_step) -> None:
    request = make_request(guests=2)
    g1, g2 = _ids(request)

    apply_stage_action(db, request.id, 1, [g1], "approve", snapshot=two_step)
    outcome = apply_stage_action(db, request.id, 1, [g2], "reject", "Duplicate", snapshot=two_step)

    request = outcome.request
    assert request.status == RequestStatus.stage2_pending
    assert request.approval_number
    assert "forwarded to Approver 2" in outcome.directive.message
    decisions = {guest.id: guest.stage1_decision for guest in request.guests}
    assert decisions == {g1: GuestDecision.approved, g2: GuestDecision.rejected}
    assert all(guest.stage2_decision == GuestDecision.unset for guest in request.guests)


def test_two_step_stage1_all_rejected_still_forwards(db, make_request, two_step) -> None:
    request = make_request(guests=1)

    outcome = apply_stage_action(db, request.id, 1, _ids(request), "reject", "Denied", snapshot=two_step)

    assert outcome.request.status == RequestStatus.stage2_pending


def test_two_step_stage2_keeps_approval_number(db, make_request, two_step, approver2) -> None:
    request = make_request(guests=2)
    g1, g2 = _ids(request)
    apply_stage_action(db, request.id, 1, [g1, g2], "approve", snapshot=two_step)
    number = db.get(type(request), request.id).approval_number

    partial = apply_stage_action(db, request.id, 2, [g1], "approve", snapshot=two_step)
    assert partial.request.status == RequestStatus.stage2_pending
    assert partial.directive is None

    outcome = apply_stage_action(db, request.id, 2, [g2], "reject", "Late addition", actor_id=approver2.id, snapshot=two_step)

    assert outcome.request.status == RequestStatus.stage2_approved
    assert outcome.request.approval_number == number
    assert outcome.request.stage2_decided_by == approver2.id
    assert "fully approved" in outcome.directive.message


def test_two_step_stage2_all_rejected(db, make_request, two_step) -> None:
    request = make_request(guests=1)
    apply_stage_action(db, request.id, 1, _ids(request), "approve", snapshot=two_step)

    outcome = apply_stage_action(db, request.id, 2, _ids(request), "reject", "Security hold", snapshot=two_step)

    assert outcome.request.status == RequestStatus.stage2_rejected
    assert outcome.directive.kind == "request_rejected"


@pytest.mark.parametrize("guest_ids", [[], ["missing-guest"]])
def test_invalid_selection_leaves_state_untouched(db, make_request, two_step, guest_ids) -> None:
    request = make_request(guests=1)

    with pytest.raises(InvalidSelection):
        apply_stage_action(db, request.id, 1, guest_ids, "approve", snapshot=two_step)

    db.expire_all()
    fresh = db.get(type(request), request.id)
    assert fresh.status == RequestStatus.submitted
    assert fresh.guests[0].stage1_decision == GuestDecision.unset


def test_terminal_guest_cannot_be_selected_again(db, make_request, two_step) -> None:
    request = make_request(guests=2)
    g1, _ = _ids(request)
    apply_stage_action(db, request.id, 1, [g1], "approve", snapshot=two_step)

    with pytest.raises(InvalidSelection):
        apply_stage_action(db, request.id, 1, [g1], "reject", "Changed my mind", snapshot=two_step)

    db.expire_all()
    assert db.get(type(request), request.id).guests[0].stage1_decision == GuestDecision.approved


@pytest.mark.parametrize("action", ["reject", "blacklist"])
def test_comment_required_for_negative_actions(db, make_request, two_step, action) -> None:
    request = make_request(guests=1)

    with pytest.raises(CommentRequired):
        apply_stage_action(db, request.id, 1, _ids(request), action, "   ", snapshot=two_step)

    db.expire_all()
    assert db.get(type(request), request.id).guests[0].stage1_decision == GuestDecision.unset
    assert db.query(BlacklistEntry).count() == 0

    outcome = apply_stage_action(db, request.id, 1, _ids(request), action, "Reason given", snapshot=two_step)
    assert outcome.request.guests[0].stage1_comment == "Reason given"


def test_blacklist_action_records_entry(db, make_request, two_step) -> None:
    request = make_request(guests=2)
    g1, _ = _ids(request)

    apply_stage_action(db, request.id, 1, [g1], "blacklist", "Prior incident", snapshot=two_step)

    entry = db.query(BlacklistEntry).one()
    assert entry.name == "Guest 1"
    assert entry.email == "guest1@example.com"
    assert entry.reason == "Prior incident"
    assert entry.active is True
    assert db.get(type(request), request.id).guests[0].stage1_decision == GuestDecision.blacklisted


def test_terminal_request_rejects_further_actions(db, make_request, one_step) -> None:
    request = make_request(guests=2)
    g1, g2 = _ids(request)
    apply_stage_action(db, request.id, 1, [g1, g2], "approve", snapshot=one_step)

    with pytest.raises(InvalidStage):
        apply_stage_action(db, request.id, 1, [g1], "reject", "Too late", snapshot=one_step)
    with pytest.raises(InvalidStage):
        apply_stage_action(db, request.id, 2, [g1], "approve", snapshot=one_step)

    db.expire_all()
    assert db.get(type(request), request.id).status == RequestStatus.stage2_approved


def test_stage2_not_open_before_forwarding(db, make_request, two_step) -> None:
    request = make_request(guests=1)

    with pytest.raises(InvalidStage):
        apply_stage_action(db, request.id, 2, _ids(request), "approve", snapshot=two_step)


def test_notification_follows_channel_flags(db, make_request) -> None:
    from app.services.settings_service import SettingsSnapshot

    snapshot = SettingsSnapshot(approval_steps=1, email_notifications=False, sms_notifications=True)
    request = make_request(guests=1)

    outcome = apply_stage_action(db, request.id, 1, _ids(request), "approve", snapshot=snapshot)

    channels = {row.channel for row in db.query(NotificationDispatch).all()}
    assert channels == {DispatchChannel.sms}
    assert db.get(Notification, outcome.notification_ids[0]).user_id == request.requested_by_id


def test_unknown_stage_is_a_validation_error(db, make_request, two_step) -> None:
    request = make_request(guests=1)

    with pytest.raises(AppException) as exc_info:
        apply_stage_action(db, request.id, 3, _ids(request), "approve", snapshot=two_step)

    assert exc_info.value.status_code == 400
    assert not isinstance(exc_info.value, InvalidStage)


def test_forwarded_request_finishes_stage2_after_switch_to_one_step(db, make_request, two_step, one_step) -> None:
    request = make_request(guests=2)
    ids = _ids(request)
    forwarded = apply_stage_action(db, request.id, 1, ids, "approve", snapshot=two_step)
    assert forwarded.request.approval_steps == 2

    with pytest.raises(InvalidStage):
        apply_stage_action(db, request.id, 1, ids, "approve", snapshot=one_step)
    outcome = apply_stage_action(db, request.id, 2, ids, "approve", snapshot=one_step)

    assert outcome.request.status == RequestStatus.stage2_approved
    assert outcome.request.approval_steps == 2
    recipients = {row.recipient for row in db.query(NotificationDispatch).filter_by(notification_id=outcome.notification_ids[0])}
    assert {"guest1@example.com", "guest2@example.com"} <= recipients


def test_one_step_evaluation_records_step_count(db, make_request, one_step) -> None:
    request = make_request(guests=1)

    outcome = apply_stage_action(db, request.id, 1, _ids(request), "approve", snapshot=one_step)

    assert outcome.request.approval_steps == 1


def test_concurrent_writer_on_other_guests_gets_invalid_stage(
    db, session_factory, make_request, two_step, monkeypatch
) -> None:
    request = make_request(guests=2)
    g1, g2 = _ids(request)
    original_transition = approval_service._transition
    raced = []

    def transition_after_competing_commit(*args, **kwargs):
        # Another approver commits a decision on g2 between our locked read and our commit.
        if not raced:
            raced.append(True)
            other = session_factory()
            try:
                apply_stage_action(other, request.id, 1, [g2], "approve", snapshot=two_step)
            finally:
                other.close()
        return original_transition(*args, **kwargs)

    monkeypatch.setattr(approval_service, "_transition", transition_after_competing_commit)

    with pytest.raises(InvalidStage, match="updated by another approver"):
        apply_stage_action(db, request.id, 1, [g1], "approve", snapshot=two_step)

    db.expire_all()
    stored = db.get(type(request), request.id)
    decisions = {guest.id: guest.stage1_decision for guest in stored.guests}
    assert decisions == {g1: GuestDecision.unset, g2: GuestDecision.approved}
    assert stored.status == RequestStatus.stage1_pending


def test_blacklist_entry_survives_failed_revalidation(db, session_factory, make_request, two_step, monkeypatch) -> None:
    request = make_request(guests=2)
    g1, _ = _ids(request)
    original_upsert = approval_service.upsert_entries_for_guests

    def upsert_then_close_request(session, guests, reason):
        count = original_upsert(session, guests, reason)
        other = session_factory()
        try:
            other.get(type(request), request.id).status = RequestStatus.stage1_rejected
            other.commit()
        finally:
            other.close()
        return count

    monkeypatch.setattr(approval_service, "upsert_entries_for_guests", upsert_then_close_request)

    with pytest.raises(InvalidStage):
        apply_stage_action(db, request.id, 1, [g1], "blacklist", "Prior incident", snapshot=two_step)

    db.expire_all()
    entry = db.query(BlacklistEntry).one()
    assert entry.name == "Guest 1"
    assert entry.reason == "Prior incident"
    assert db.get(type(request), request.id).guests[0].stage1_decision == GuestDecision.unset
