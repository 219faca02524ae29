"""
Deferred queue: pushes held back by quiet hours.

One pending row per (user, type, listing) per rolling DEFERRED_DEDUP_HOURS. The drain (orchestrator
.process_deferred) claims a due row with a conditional UPDATE on processed_at, so a row is handed to
at most one drain even when runs overlap; it then ends in sent | failed | skipped, or is released
back to pending with a later deliver_after.
"""
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from listing_alerts.core.clock import as_utc, utcnow
from listing_alerts.core.delivery_config import DEFERRED_DEDUP_HOURS
from listing_alerts.models.deferred_notification import DeferredNotification
from listing_alerts.services.push.payloads import NotificationPayload, dump_payload

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUSES = ("pending", "sent", "failed", "skipped")


def enqueue(
    db: Session,
    user_id: str,
    payload: NotificationPayload,
    deliver_after: datetime,
    now: datetime | None = None,
) -> DeferredNotification | None:
    """Queue a push for after quiet hours. Returns None if the same alert is already waiting. Commits."""
    now = now or utcnow()
    listing_id = getattr(payload, "listing_id", None)
    if listing_id is not None:
        existing = (
            db.query(DeferredNotification.id)
            .filter(
                DeferredNotification.user_id == user_id,
                DeferredNotification.notification_type == payload.kind,
                DeferredNotification.listing_id == listing_id,
                DeferredNotification.status == STATUS_PENDING,
                DeferredNotification.created_at >= now - timedelta(hours=DEFERRED_DEDUP_HOURS),
            )
            .first()
        )
        if existing:
            logger.debug("Deferred: %s/%s for user %s already queued", payload.kind, listing_id, user_id)
            return None
    row = DeferredNotification(
        user_id=user_id,
        notification_type=payload.kind,
        listing_id=listing_id,
        payload=dump_payload(payload),
        deliver_after=deliver_after,
        status=STATUS_PENDING,
        created_at=now,
    )
    db.add(row)
    db.commit()
    logger.info(
        "Deferred %s for user %s until %s", payload.kind, user_id, as_utc(deliver_after).isoformat()
    )
    return row


def due(db: Session, now: datetime | None = None, limit: int = 100) -> list[DeferredNotification]:
    """Pending rows whose deliver_after has passed, oldest first (FIFO on ties)."""
    now = now or utcnow()
    return (
        db.query(DeferredNotification)
        .filter(
            DeferredNotification.status == STATUS_PENDING,
            DeferredNotification.processed_at.is_(None),
            DeferredNotification.deliver_after <= now,
        )
        .order_by(
            DeferredNotification.deliver_after.asc(),
            DeferredNotification.created_at.asc(),
            DeferredNotification.id.asc(),
        )
        .limit(limit)
        .all()
    )


def claim(db: Session, row_id: int, now: datetime | None = None) -> bool:
    """Take a pending row for this drain. False if another drain got it first. Commits."""
    now = now or utcnow()
    claimed = (
        db.query(DeferredNotification)
        .filter(
            DeferredNotification.id == row_id,
            DeferredNotification.status == STATUS_PENDING,
            DeferredNotification.processed_at.is_(None),
        )
        .update({DeferredNotification.processed_at: now}, synchronize_session=False)
    )
    db.commit()
    return claimed == 1


def finish(db: Session, row_id: int, status: str, error_message: str | None = None) -> None:
    db.query(DeferredNotification).filter(DeferredNotification.id == row_id).update(
        {DeferredNotification.status: status, DeferredNotification.error_message: error_message},
        synchronize_session=False,
    )
    db.commit()


def release(db: Session, row_id: int, deliver_after: datetime) -> None:
    """Put a claimed row back (still quiet hours after a preference change)."""
    db.query(DeferredNotification).filter(DeferredNotification.id == row_id).update(
        {DeferredNotification.processed_at: None, DeferredNotification.deliver_after: deliver_after},
        synchronize_session=False,
    )
    db.commit()


def cleanup(db: Session, retention_days: int, now: datetime | None = None) -> int:
    """Delete finished rows processed more than retention_days ago. Commits."""
    now = now or utcnow()
    deleted = (
        db.query(DeferredNotification)
        .filter(
            DeferredNotification.status != STATUS_PENDING,
            DeferredNotification.processed_at < now - timedelta(days=retention_days),
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


def get_stats(db: Session) -> dict[str, Any]:
    counts = dict(
        db.query(DeferredNotification.status, func.count(DeferredNotification.id))
        .group_by(DeferredNotification.status)
        .all()
    )
    oldest = (
        db.query(func.min(DeferredNotification.deliver_after))
        .filter(DeferredNotification.status == STATUS_PENDING)
        .scalar()
    )
    oldest = as_utc(oldest)
    out: dict[str, Any] = {s: int(counts.get(s, 0)) for s in STATUSES}
    out["oldest_pending"] = oldest.isoformat() if oldest else None
    return out
