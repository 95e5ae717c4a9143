import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

import httpx
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.db.models import DispatchChannel, DispatchStatus, NotificationDispatch
from app.notifications.providers.base import EmailPayload, SendResult, SmsPayload, is_retryable
from app.notifications.providers.registry import ProviderRegistry
from app.notifications.retry import DISPATCH_RETRY_POLICY, RetryPolicy, retry
from app.services.settings_service import get_settings_snapshot

logger = logging.getLogger(__name__)

MAX_DISPATCH_ATTEMPTS = 3
STALE_CLAIM_AFTER = timedelta(minutes=15)

Scheduler = Callable[[str], Awaitable[None]]

_background_tasks: set[asyncio.Task] = set()


@dataclass
class ProcessSummary:
    notification_id: str
    claimed: int = 0
    sent: int = 0
    requeued: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return {
            "notificationId": self.notification_id,
            "claimed": self.claimed,
            "sent": self.sent,
            "requeued": self.requeued,
            "failed": self.failed,
        }


def claim_queued_dispatches(db: Session, notification_id: str) -> list[NotificationDispatch]:
    """Move queued rows to ``sending`` and consume one attempt each.

    The conditional update only matches rows still ``queued``, so a row claimed
    by a concurrent processor is skipped here.
    """
    candidate_ids = [
        row_id
        for (row_id,) in db.query(NotificationDispatch.id)
        .filter(
            NotificationDispatch.notification_id == notification_id,
            NotificationDispatch.status == DispatchStatus.queued,
        )
        .order_by(NotificationDispatch.created_at.asc())
        .all()
    ]
    now = datetime.utcnow()
    claimed_ids: list[str] = []
    for row_id in candidate_ids:
        result = db.execute(
            update(NotificationDispatch)
            .where(NotificationDispatch.id == row_id, NotificationDispatch.status == DispatchStatus.queued)
            .values(
                status=DispatchStatus.sending,
                attempts=NotificationDispatch.attempts + 1,
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed_ids.append(row_id)
    db.commit()

    if not claimed_ids:
        return []
    return (
        db.query(NotificationDispatch)
        .filter(NotificationDispatch.id.in_(claimed_ids))
        .order_by(NotificationDispatch.created_at.asc())
        .populate_existing()
        .all()
    )


async def _deliver(
    row: NotificationDispatch,
    registry: ProviderRegistry,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]],
) -> SendResult:
    provider = registry.get(row.channel)
    if row.channel == DispatchChannel.email:
        payload = EmailPayload(to=row.recipient, subject=row.subject or "Notification", text=row.body)
    else:
        payload = SmsPayload(to=row.recipient, message=row.body)

    async def _attempt(_: int) -> SendResult:
        return await provider.send(payload)

    return await retry(_attempt, policy, should_retry=is_retryable, sleep=sleep)


def _record_outcome(row: NotificationDispatch, outcome: SendResult | BaseException, summary: ProcessSummary) -> None:
    if isinstance(outcome, SendResult):
        row.status = DispatchStatus.sent
        row.provider = outcome.provider
        row.provider_message_id = outcome.message_id
        row.last_error = None
        summary.sent += 1
        logger.info("dispatch sent dispatch_id=%s channel=%s provider=%s attempts=%s", row.id, row.channel.value, outcome.provider, row.attempts)
        return

    retryable = is_retryable(outcome)
    row.last_error = str(outcome)[:1000]
    if retryable and row.attempts < MAX_DISPATCH_ATTEMPTS:
        row.status = DispatchStatus.queued
        summary.requeued += 1
    else:
        row.status = DispatchStatus.failed
        summary.failed += 1
    logger.warning(
        "dispatch failed dispatch_id=%s channel=%s attempts=%s retryable=%s status=%s error=%s",
        row.id,
        row.channel.value,
        row.attempts,
        retryable,
        row.status.value,
        row.last_error,
    )


async def process_notification(
    db: Session,
    notification_id: str,
    *,
    registry: ProviderRegistry | None = None,
    env: Settings | None = None,
    policy: RetryPolicy = DISPATCH_RETRY_POLICY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ProcessSummary:
    summary = ProcessSummary(notification_id=notification_id)
    rows = claim_queued_dispatches(db, notification_id)
    summary.claimed = len(rows)
    if not rows:
        return summary

    if registry is None:
        registry = ProviderRegistry(get_settings_snapshot(db), env or get_settings())

    # Sends run concurrently; one row failing never cancels its siblings.
    outcomes = await asyncio.gather(
        *(_deliver(row, registry, policy, sleep) for row in rows),
        return_exceptions=True,
    )
    for row, outcome in zip(rows, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        _record_outcome(row, outcome, summary)
    db.commit()
    return summary


def requeue_stale_dispatches(db: Session, older_than: timedelta = STALE_CLAIM_AFTER, now: datetime | None = None) -> dict:
    """Release rows left in ``sending`` by a processor that never finished."""
    cutoff = (now or datetime.utcnow()) - older_than
    rows = (
        db.query(NotificationDispatch)
        .filter(
            NotificationDispatch.status == DispatchStatus.sending,
            NotificationDispatch.last_attempt_at < cutoff,
        )
        .all()
    )
    requeued: set[str] = set()
    failed = 0
    for row in rows:
        if row.attempts < MAX_DISPATCH_ATTEMPTS:
            row.status = DispatchStatus.queued
            requeued.add(row.notification_id)
        else:
            row.status = DispatchStatus.failed
            row.last_error = "stale claim"
            failed += 1
    db.commit()
    return {"requeued": len(rows) - failed, "failed": failed, "notificationIds": sorted(requeued)}


async def _publish_to_queue(notification_id: str, env: Settings) -> bool:
    publish_url = f"{env.QSTASH_PUBLISH_URL.rstrip('/')}/{env.NOTIFICATIONS_DISPATCH_URL}"
    async with httpx.AsyncClient(timeout=env.PROVIDER_TIMEOUT_SECONDS) as client:
        response = await client.post(
            publish_url,
            json={"notificationId": notification_id},
            headers={
                "Authorization": f"Bearer {env.QSTASH_TOKEN}",
                "Upstash-Forward-Authorization": f"Bearer {env.NOTIFICATIONS_DISPATCH_SECRET}",
            },
        )
    return response.is_success


def _run_in_background(notification_id: str, session_factory: sessionmaker) -> None:
    async def _run() -> None:
        db = None
        try:
            db = session_factory()
            summary = await process_notification(db, notification_id)
            logger.info("background dispatch finished %s", summary.as_dict())
        except Exception:
            logger.exception("background dispatch failed notification_id=%s", notification_id)
        finally:
            if db is not None:
                db.close()

    task = asyncio.get_running_loop().create_task(_run())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def schedule_processing(
    notification_id: str,
    *,
    env: Settings | None = None,
    session_factory: sessionmaker | None = None,
) -> None:
    """Hand a notification to an out-of-band processor. Never raises."""
    env = env or get_settings()
    if env.qstash_enabled:
        try:
            if await _publish_to_queue(notification_id, env):
                return
            logger.warning("queue publish rejected notification_id=%s; falling back to in-process", notification_id)
        except Exception:
            logger.exception("queue publish failed notification_id=%s; falling back to in-process", notification_id)

    try:
        if session_factory is None:
            from app.db.session import SessionLocal

            session_factory = SessionLocal
        _run_in_background(notification_id, session_factory)
    except Exception:
        logger.exception("could not schedule notification_id=%s", notification_id)


async def schedule_many(notification_ids: list[str], scheduler: Scheduler | None = None) -> None:
    scheduler = scheduler or schedule_processing
    for notification_id in notification_ids:
        await scheduler(notification_id)
