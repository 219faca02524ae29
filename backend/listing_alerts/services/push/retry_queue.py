"""
Retry queue for APNs sends that failed transiently (timeout, network, 429, 5xx).

enqueue: retry_count=0, next_retry_at = now + base delay (60s).
process_due: claim due rows (pending -> processing), resend, then
  delivered            -> completed (the logical notification flips to sent)
  transient again      -> retry_count + 1; dead letter (failed) once it reaches max_retries,
                          else pending at now + base * 2**retry_count
  unregistered/reject  -> failed right away
  store error          -> back to pending at the same backoff step (release), drain goes on
With base 60s and max 5 this resends at +60, +120, +240, +480, +960 seconds: five retries, then failed.
"""
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from listing_alerts.core.clock import utcnow
from listing_alerts.core.errors import StoreError
from listing_alerts.core.delivery_config import (
    PUSH_RETRY_BASE_DELAY_SECONDS,
    PUSH_RETRY_BATCH_SIZE,
    PUSH_RETRY_EXPIRE_HOURS,
    PUSH_RETRY_MAX_RETRIES,
    RETRY_COMPLETED_RETENTION_DAYS,
    RETRY_FAILED_RETENTION_DAYS,
)
from listing_alerts.models.retry_queue_entry import RetryQueueEntry

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_EXPIRED = "expired"
STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED, STATUS_EXPIRED)


def next_delay_seconds(retry_count: int, base_delay: int = PUSH_RETRY_BASE_DELAY_SECONDS) -> int:
    """Delay before the next attempt after retry_count failed retries."""
    return base_delay * (2 ** retry_count)


def enqueue(
    db: Session,
    *,
    user_id: str,
    endpoint_id: int | None,
    device_token: str,
    payload: dict[str, Any],
    notification_type: str,
    delivery_log_id: int | None = None,
    is_sandbox: bool = False,
    error: str | None = None,
    max_retries: int = PUSH_RETRY_MAX_RETRIES,
    now: datetime | None = None,
) -> RetryQueueEntry:
    now = now or utcnow()
    entry = RetryQueueEntry(
        user_id=user_id,
        endpoint_id=endpoint_id,
        device_token=device_token,
        payload=payload,
        notification_type=notification_type,
        delivery_log_id=delivery_log_id,
        is_sandbox=is_sandbox,
        retry_count=0,
        max_retries=max_retries,
        last_error=error,
        next_retry_at=now + timedelta(seconds=next_delay_seconds(0)),
        status=STATUS_PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(entry)
    db.commit()
    return entry


def due(db: Session, now: datetime | None = None, limit: int = PUSH_RETRY_BATCH_SIZE) -> list[RetryQueueEntry]:
    """Pending entries whose next_retry_at has passed; FIFO by creation time on ties."""
    now = now or utcnow()
    return (
        db.query(RetryQueueEntry)
        .filter(RetryQueueEntry.status == STATUS_PENDING, RetryQueueEntry.next_retry_at <= now)
        .order_by(RetryQueueEntry.next_retry_at.asc(), RetryQueueEntry.created_at.asc(), RetryQueueEntry.id.asc())
        .limit(limit)
        .all()
    )


def claim(db: Session, entry_id: int, now: datetime | None = None) -> bool:
    """pending -> processing, only if still pending. Commits."""
    now = now or utcnow()
    claimed = (
        db.query(RetryQueueEntry)
        .filter(RetryQueueEntry.id == entry_id, RetryQueueEntry.status == STATUS_PENDING)
        .update(
            {RetryQueueEntry.status: STATUS_PROCESSING, RetryQueueEntry.updated_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    return claimed == 1


def _finish(db: Session, entry_id: int, values: dict[Any, Any], now: datetime) -> None:
    values[RetryQueueEntry.updated_at] = now
    db.query(RetryQueueEntry).filter(RetryQueueEntry.id == entry_id).update(values, synchronize_session=False)
    db.commit()


def release(
    db: Session,
    entry_id: int,
    error: str,
    now: datetime | None = None,
    base_delay: int = PUSH_RETRY_BASE_DELAY_SECONDS,
) -> None:
    """processing -> pending after a store error. The attempt does not count toward max_retries. Commits."""
    now = now or utcnow()
    entry = db.get(RetryQueueEntry, entry_id)
    if entry is None:
        return
    entry.status = STATUS_PENDING
    entry.next_retry_at = now + timedelta(seconds=next_delay_seconds(entry.retry_count, base_delay))
    entry.last_error = error[:2000]
    entry.updated_at = now
    db.commit()


def process_due(
    db: Session,
    transport,
    limiter=None,
    now: datetime | None = None,
    batch_size: int = PUSH_RETRY_BATCH_SIZE,
    base_delay: int = PUSH_RETRY_BASE_DELAY_SECONDS,
) -> dict[str, int]:
    """Resend due entries once each. Returns counts per result."""
    from listing_alerts.services import dedup
    from listing_alerts.services.push.delivery import (
        OUTCOME_RETRIABLE,
        OUTCOME_SENT,
        SOURCE_RETRY,
        EndpointTarget,
        send_to_endpoint,
    )

    now = now or utcnow()
    counts = {"processed": 0, "completed": 0, "rescheduled": 0, "failed": 0, "released": 0}
    for entry in due(db, now=now, limit=batch_size):
        entry_id = entry.id
        if not claim(db, entry_id, now=now):
            continue
        counts["processed"] += 1
        try:
            outcome, error = send_to_endpoint(
                db,
                transport,
                limiter,
                target=EndpointTarget(entry.endpoint_id, entry.device_token, bool(entry.is_sandbox)),
                user_id=entry.user_id,
                notification_type=entry.notification_type,
                apns_payload=entry.payload,
                delivery_log_id=entry.delivery_log_id,
                source=SOURCE_RETRY,
                enqueue_retry=False,
                now=now,
            )
        except (SQLAlchemyError, StoreError) as e:
            db.rollback()
            logger.exception("Retry %s: store error, releasing for the next drain: %s", entry_id, e)
            try:
                release(db, entry_id, str(e), now=now, base_delay=base_delay)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Retry %s: could not release, left for expiry", entry_id)
            counts["released"] += 1
            continue

        new_count = entry.retry_count + 1
        if outcome == OUTCOME_SENT:
            _finish(db, entry_id, {RetryQueueEntry.status: STATUS_COMPLETED, RetryQueueEntry.retry_count: new_count}, now)
            if entry.delivery_log_id is not None:
                dedup.mark_delivered(db, entry.delivery_log_id, reason="delivered on retry")
            counts["completed"] += 1
        elif outcome == OUTCOME_RETRIABLE and new_count < entry.max_retries:
            _finish(
                db,
                entry_id,
                {
                    RetryQueueEntry.status: STATUS_PENDING,
                    RetryQueueEntry.retry_count: new_count,
                    RetryQueueEntry.next_retry_at: now + timedelta(seconds=next_delay_seconds(new_count, base_delay)),
                    RetryQueueEntry.last_error: error or f"retry {new_count} failed",
                },
                now,
            )
            counts["rescheduled"] += 1
        else:
            reason = "max retries reached" if outcome == OUTCOME_RETRIABLE else f"non-retriable: {outcome}"
            if error:
                reason = f"{reason}: {error}"
            _finish(
                db,
                entry_id,
                {
                    RetryQueueEntry.status: STATUS_FAILED,
                    RetryQueueEntry.retry_count: min(new_count, entry.max_retries),
                    RetryQueueEntry.last_error: reason,
                },
                now,
            )
            logger.info("Retry %s dead-lettered after %s attempts (%s)", entry_id, new_count, reason)
            counts["failed"] += 1
    return counts


def expire_stale(db: Session, now: datetime | None = None, hours: int = PUSH_RETRY_EXPIRE_HOURS) -> int:
    """Mark entries still pending (or stuck processing) after `hours` as expired. Commits."""
    now = now or utcnow()
    expired = (
        db.query(RetryQueueEntry)
        .filter(
            RetryQueueEntry.status.in_((STATUS_PENDING, STATUS_PROCESSING)),
            RetryQueueEntry.created_at < now - timedelta(hours=hours),
        )
        .update(
            {RetryQueueEntry.status: STATUS_EXPIRED, RetryQueueEntry.updated_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    if expired:
        logger.info("Retry queue: expired %s stale entries", expired)
    return expired


def cleanup(db: Session, now: datetime | None = None) -> int:
    """Delete completed entries after 7 days and failed/expired ones after 30. Commits."""
    now = now or utcnow()
    deleted = (
        db.query(RetryQueueEntry)
        .filter(
            RetryQueueEntry.status == STATUS_COMPLETED,
            RetryQueueEntry.updated_at < now - timedelta(days=RETRY_COMPLETED_RETENTION_DAYS),
        )
        .delete(synchronize_session=False)
    )
    deleted += (
        db.query(RetryQueueEntry)
        .filter(
            RetryQueueEntry.status.in_((STATUS_FAILED, STATUS_EXPIRED)),
            RetryQueueEntry.updated_at < now - timedelta(days=RETRY_FAILED_RETENTION_DAYS),
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


def get_stats(db: Session) -> dict[str, int]:
    counts = dict(
        db.query(RetryQueueEntry.status, func.count(RetryQueueEntry.id)).group_by(RetryQueueEntry.status).all()
    )
    return {s: int(counts.get(s, 0)) for s in STATUSES}
