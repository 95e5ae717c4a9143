import asyncio
import json
from datetime import datetime, timedelta

import httpx
import pytest

from app.core.config import Settings
from app.db.models import DispatchChannel, DispatchStatus, NotificationDispatch
from app.notifications import dispatcher
from app.notifications.dispatcher import (
    claim_queued_dispatches,
    process_notification,
    requeue_stale_dispatches,
    schedule_processing,
)
from app.notifications.outbox import ChannelPayload, create_notification_with_dispatches
from app.notifications.providers.base import ProviderError, ProviderNotConfigured, SendResult
from app.notifications.retry import RetryPolicy

SINGLE_TRY = RetryPolicy(retries=0)


async def no_sleep(_: float) -> None:
    return None


class ScriptedProvider:
    """Raises the queued errors in order, then succeeds."""

    def __init__(self, name: str, errors=()):
        self.name = name
        self.errors = list(errors)
        self.sent = []

    async def send(self, payload) -> SendResult:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(payload)
        return SendResult(provider=self.name, message_id=f"{self.name}-{len(self.sent)}")


class StaticRegistry:
    def __init__(self, email=None, sms=None):
        self.providers = {DispatchChannel.email: email, DispatchChannel.sms: sms}

    def get(self, channel):
        provider = self.providers.get(channel)
        if provider is None:
            raise ProviderNotConfigured(channel.value)
        return provider


def _transient() -> ProviderError:
    return ProviderError("gateway 503", http_status=503, transient=True)


@pytest.fixture
def notification(db, requester):
    notification = create_notification_with_dispatches(
        db,
        user_id=requester.id,
        kind="request_approved",
        message="approved",
        request_id="req-1",
        payloads=[
            ChannelPayload.email("guest@example.com", "Visit Approved - APV-1", "body"),
            ChannelPayload.sms("+15550001111", "body"),
        ],
    )
    db.commit()
    return notification


def _rows(db, notification_id):
    db.expire_all()
    rows = db.query(NotificationDispatch).filter(NotificationDispatch.notification_id == notification_id).all()
    return {row.channel: row for row in rows}


@pytest.mark.anyio
async def test_transient_failures_requeue_until_third_attempt_succeeds(db, notification) -> None:
    email = ScriptedProvider("smtp", errors=[_transient(), _transient()])
    registry = StaticRegistry(email=email, sms=ScriptedProvider("sms-gateway"))

    first = await process_notification(db, notification.id, registry=registry, policy=SINGLE_TRY, sleep=no_sleep)
    assert first.requeued == 1 and first.sent == 1
    assert _rows(db, notification.id)[DispatchChannel.email].status == DispatchStatus.queued

    await process_notification(db, notification.id, registry=registry, policy=SINGLE_TRY, sleep=no_sleep)
    third = await process_notification(db, notification.id, registry=registry, policy=SINGLE_TRY, sleep=no_sleep)

    row = _rows(db, notification.id)[DispatchChannel.email]
    assert third.sent == 1
    assert row.status == DispatchStatus.sent
    assert row.attempts == 3
    assert row.provider == "smtp"
    assert row.last_error is None


@pytest.mark.anyio
async def test_in_pass_retries_consume_one_attempt(db, notification) -> None:
    email = ScriptedProvider("smtp", errors=[_transient(), _transient()])
    registry = StaticRegistry(email=email, sms=ScriptedProvider("sms-gateway"))
    delays = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    await process_notification(db, notification.id, registry=registry, sleep=record_sleep)

    row = _rows(db, notification.id)[DispatchChannel.email]
    assert row.status == DispatchStatus.sent
    assert row.attempts == 1
    assert len(delays) == 2
    assert 0.5 <= delays[0] <= 0.75
    assert 1.0 <= delays[1] <= 1.25


@pytest.mark.anyio
async def test_permanent_failure_is_not_retried(db, notification) -> None:
    email = ScriptedProvider("resend", errors=[ProviderError("bad address", http_status=422)])
    registry = StaticRegistry(email=email, sms=ScriptedProvider("sms-gateway"))

    summary = await process_notification(db, notification.id, registry=registry, sleep=no_sleep)
    again = await process_notification(db, notification.id, registry=registry, sleep=no_sleep)

    row = _rows(db, notification.id)[DispatchChannel.email]
    assert summary.failed == 1
    assert again.claimed == 0
    assert row.status == DispatchStatus.failed
    assert row.attempts == 1
    assert "bad address" in row.last_error


@pytest.mark.anyio
async def test_transient_failure_stops_after_three_attempts(db, notification) -> None:
    email = ScriptedProvider("smtp", errors=[_transient() for _ in range(5)])
    registry = StaticRegistry(email=email, sms=ScriptedProvider("sms-gateway"))

    for _ in range(4):
        await process_notification(db, notification.id, registry=registry, policy=SINGLE_TRY, sleep=no_sleep)

    row = _rows(db, notification.id)[DispatchChannel.email]
    assert row.status == DispatchStatus.failed
    assert row.attempts == 3


@pytest.mark.anyio
async def test_sibling_rows_are_independent(db, notification) -> None:
    registry = StaticRegistry(email=None, sms=ScriptedProvider("twilio"))

    summary = await process_notification(db, notification.id, registry=registry, sleep=no_sleep)

    rows = _rows(db, notification.id)
    assert summary.sent == 1 and summary.failed == 1
    assert rows[DispatchChannel.sms].status == DispatchStatus.sent
    assert rows[DispatchChannel.email].status == DispatchStatus.failed
    assert "No email provider configured" in rows[DispatchChannel.email].last_error


def test_claim_skips_rows_already_owned(db, notification) -> None:
    first = claim_queued_dispatches(db, notification.id)
    second = claim_queued_dispatches(db, notification.id)

    assert len(first) == 2
    assert second == []
    assert all(row.status == DispatchStatus.sending and row.attempts == 1 for row in first)


def test_requeue_stale_dispatches(db, notification) -> None:
    claimed = claim_queued_dispatches(db, notification.id)
    exhausted = claimed[1]
    exhausted.attempts = 3
    db.commit()

    result = requeue_stale_dispatches(db, older_than=timedelta(minutes=5), now=datetime.utcnow() + timedelta(minutes=10))

    rows = {row.id: row for row in _rows(db, notification.id).values()}
    assert result["requeued"] == 1 and result["failed"] == 1
    assert result["notificationIds"] == [notification.id]
    assert rows[claimed[0].id].status == DispatchStatus.queued
    assert rows[exhausted.id].status == DispatchStatus.failed
    assert rows[exhausted.id].last_error == "stale claim"


QUEUE_ENV = {
    "QSTASH_TOKEN": "qstash-token",
    "QSTASH_PUBLISH_URL": "https://qstash.test/v2/publish",
    "NOTIFICATIONS_DISPATCH_URL": "https://vms.test/api/v1/jobs/notifications/dispatch",
    "NOTIFICATIONS_DISPATCH_SECRET": "job-secret",
}


def _queue_client(monkeypatch, handler) -> list[httpx.Request]:
    """Route the dispatcher's publish call through a mock transport; returns the captured requests."""
    captured: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def _handle(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return handler(request)

    monkeypatch.setattr(
        dispatcher.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(_handle), **kwargs),
    )
    return captured


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("queue unreachable", request=request)


async def _drain_background() -> None:
    while dispatcher._background_tasks:
        await asyncio.gather(*list(dispatcher._background_tasks))


@pytest.mark.anyio
async def test_schedule_publishes_to_queue_when_configured(db, notification, session_factory, monkeypatch) -> None:
    captured = _queue_client(monkeypatch, lambda request: httpx.Response(201, json={"messageId": "msg-1"}))

    await schedule_processing(notification.id, env=Settings(**QUEUE_ENV, _env_file=None), session_factory=session_factory)

    assert len(captured) == 1
    request = captured[0]
    assert str(request.url) == "https://qstash.test/v2/publish/https://vms.test/api/v1/jobs/notifications/dispatch"
    assert request.headers["Authorization"] == "Bearer qstash-token"
    assert request.headers["Upstash-Forward-Authorization"] == "Bearer job-secret"
    assert json.loads(request.content) == {"notificationId": notification.id}
    assert not dispatcher._background_tasks
    assert {row.status for row in _rows(db, notification.id).values()} == {DispatchStatus.queued}


@pytest.mark.anyio
@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(500, json={"error": "unavailable"}),
        _unreachable,
    ],
    ids=["rejected", "unreachable"],
)
async def test_schedule_falls_back_to_in_process_task(db, notification, session_factory, monkeypatch, handler) -> None:
    captured = _queue_client(monkeypatch, handler)

    await schedule_processing(notification.id, env=Settings(**QUEUE_ENV, _env_file=None), session_factory=session_factory)
    await _drain_background()

    assert len(captured) == 1
    rows = _rows(db, notification.id)
    assert all(row.attempts == 1 for row in rows.values())
    assert all(row.status != DispatchStatus.queued for row in rows.values())


@pytest.mark.anyio
async def test_schedule_without_queue_runs_in_process(db, notification, session_factory, monkeypatch) -> None:
    captured = _queue_client(monkeypatch, lambda request: httpx.Response(201))

    await schedule_processing(notification.id, env=Settings(_env_file=None), session_factory=session_factory)
    await _drain_background()

    assert captured == []
    assert all(row.attempts == 1 for row in _rows(db, notification.id).values())


@pytest.mark.anyio
async def test_schedule_never_raises(notification) -> None:
    def broken_factory():
        raise RuntimeError("database unavailable")

    await schedule_processing(notification.id, env=Settings(_env_file=None), session_factory=broken_factory)
    await _drain_background()
