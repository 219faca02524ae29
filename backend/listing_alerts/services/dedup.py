"""
Deduplication tracker over the delivery log.

A logical notification is one delivery_log row keyed by
    dedup_signature = user | type | listing-or-title | UTC hour bucket
unique per channel. record_sent() inserts with ON CONFLICT DO NOTHING, so a second run, a second
worker or a second device of the same user finds the row already there and gets None back instead
of an error. was_sent()/batch_check_sent() answer the wider cross-run question (default 24h).

The same rows back the notification history API (read / dismiss).
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy.orm import Session

from listing_alerts.core.clock import as_utc, utcnow
from listing_alerts.core.constants import CHANNEL_PUSH, STATUS_FAILED, STATUS_SENT, STATUS_SKIPPED
from listing_alerts.core.delivery_config import DEDUP_WINDOW_HOURS
from listing_alerts.db.upsert import insert_for
from listing_alerts.models.delivery_log import DeliveryLogEntry
from listing_alerts.models.push_attempt import PushAttempt
from listing_alerts.services.badges import reset_badge

logger = logging.getLogger(__name__)

SIGNATURE_SUBJECT_MAX = 120
DELIVERED_STATUSES = (STATUS_SENT, STATUS_FAILED)


def dedup_signature(user_id: str, notification_type: str, subject: str | None, at: datetime) -> str:
    """user|type|listing-or-title|YYYY-MM-DDTHH (UTC)."""
    subject = (subject or "")[:SIGNATURE_SUBJECT_MAX]
    return f"{user_id}|{notification_type}|{subject}|{as_utc(at).strftime('%Y-%m-%dT%H')}"


def was_sent(
    db: Session,
    user_id: str,
    listing_id: str | None,
    notification_type: str,
    window_hours: int = DEDUP_WINDOW_HOURS,
    channel: str = CHANNEL_PUSH,
    now: datetime | None = None,
) -> bool:
    """True if a sent/failed notification of this type for this listing went to the user within the window."""
    now = now or utcnow()
    q = db.query(DeliveryLogEntry.id).filter(
        DeliveryLogEntry.user_id == user_id,
        DeliveryLogEntry.notification_type == notification_type,
        DeliveryLogEntry.channel == channel,
        DeliveryLogEntry.status.in_(DELIVERED_STATUSES),
        DeliveryLogEntry.created_at >= now - timedelta(hours=window_hours),
    )
    if listing_id is None:
        q = q.filter(DeliveryLogEntry.listing_id.is_(None))
    else:
        q = q.filter(DeliveryLogEntry.listing_id == listing_id)
    return q.first() is not None


def batch_check_sent(
    db: Session,
    user_id: str,
    items: Iterable[tuple[str, str]],
    window_hours: int = DEDUP_WINDOW_HOURS,
    channel: str = CHANNEL_PUSH,
    now: datetime | None = None,
) -> set[tuple[str, str]]:
    """Subset of (listing_id, type) pairs already sent to the user within the window. One query."""
    wanted = set(items)
    if not wanted:
        return set()
    now = now or utcnow()
    listing_ids = {listing_id for listing_id, _ in wanted}
    rows = (
        db.query(DeliveryLogEntry.listing_id, DeliveryLogEntry.notification_type)
        .filter(
            DeliveryLogEntry.user_id == user_id,
            DeliveryLogEntry.channel == channel,
            DeliveryLogEntry.listing_id.in_(listing_ids),
            DeliveryLogEntry.status.in_(DELIVERED_STATUSES),
            DeliveryLogEntry.created_at >= now - timedelta(hours=window_hours),
        )
        .distinct()
        .all()
    )
    return {(r.listing_id, r.notification_type) for r in rows} & wanted


def record_sent(
    db: Session,
    user_id: str,
    listing_id: str | None,
    notification_type: str,
    *,
    title: str,
    body: str | None = None,
    payload: dict[str, Any] | None = None,
    status: str = STATUS_SENT,
    subject: str | None = None,
    channel: str = CHANNEL_PUSH,
    now: datetime | None = None,
) -> DeliveryLogEntry | None:
    """
    Claim the dedup signature for this notification. Commits.
    subject overrides the listing id as the signature key (e.g. one alert per appointment).
    Returns the new row, or None when the signature already exists (already sent: not an error).
    """
    now = now or utcnow()
    signature = dedup_signature(user_id, notification_type, subject or listing_id or title, now)
    insert = insert_for(db)
    stmt = (
        insert(DeliveryLogEntry)
        .values(
            user_id=user_id,
            notification_type=notification_type,
            listing_id=listing_id,
            channel=channel,
            title=title[:256],
            body=body,
            payload=payload,
            status=status,
            dedup_signature=signature,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["channel", "dedup_signature"])
        .returning(DeliveryLogEntry.id)
    )
    new_id = db.execute(stmt).scalar()
    db.commit()
    if new_id is None:
        logger.debug("Dedup: %s already recorded", signature)
        return None
    return db.get(DeliveryLogEntry, new_id)


def record_skipped(
    db: Session,
    user_id: str,
    listing_id: str | None,
    notification_type: str,
    *,
    title: str,
    reason: str,
    channel: str = CHANNEL_PUSH,
    now: datetime | None = None,
) -> DeliveryLogEntry:
    """Log a decision not to send. Skipped rows carry no signature and never block a later send."""
    now = now or utcnow()
    row = DeliveryLogEntry(
        user_id=user_id,
        notification_type=notification_type,
        listing_id=listing_id,
        channel=channel,
        title=title[:256],
        status=STATUS_SKIPPED,
        reason=reason[:256],
        created_at=now,
    )
    db.add(row)
    db.commit()
    return row


def set_status(db: Session, entry_id: int, status: str, reason: str | None = None) -> None:
    """Move a logical notification between sent and failed (e.g. every device failed, or a retry succeeded)."""
    values: dict[Any, Any] = {DeliveryLogEntry.status: status}
    if reason is not None:
        values[DeliveryLogEntry.reason] = reason[:256]
    db.query(DeliveryLogEntry).filter(DeliveryLogEntry.id == entry_id).update(values, synchronize_session=False)
    db.commit()


def mark_failed(db: Session, entry_id: int, reason: str) -> None:
    set_status(db, entry_id, STATUS_FAILED, reason=reason)


def mark_delivered(db: Session, entry_id: int, reason: str | None = None) -> None:
    set_status(db, entry_id, STATUS_SENT, reason=reason)


def release_claim(db: Session, entry_id: int) -> None:
    """Drop a claimed row that never reached a device, freeing its signature. Commits."""
    db.query(DeliveryLogEntry).filter(DeliveryLogEntry.id == entry_id).delete(synchronize_session=False)
    db.commit()
    logger.info("Released dedup claim %s", entry_id)


# --- History (read / dismiss) ---


def _entry_dict(row: DeliveryLogEntry) -> dict[str, Any]:
    created_at = as_utc(row.created_at)
    read_at = as_utc(row.read_at)
    return {
        "id": row.id,
        "type": row.notification_type,
        "listing_id": row.listing_id,
        "title": row.title,
        "body": row.body,
        "read": row.read_at is not None,
        "read_at": read_at.isoformat() if read_at else None,
        "created_at": created_at.isoformat() if created_at else None,
        "payload": row.payload or {},
    }


def list_history(db: Session, user_id: str, limit: int = 80, unread_only: bool = False) -> dict[str, Any]:
    """Delivered push notifications for the user, newest first, one row per logical notification."""
    base = db.query(DeliveryLogEntry).filter(
        DeliveryLogEntry.user_id == user_id,
        DeliveryLogEntry.channel == CHANNEL_PUSH,
        DeliveryLogEntry.status == STATUS_SENT,
        DeliveryLogEntry.dismissed_at.is_(None),
    )
    q = base.filter(DeliveryLogEntry.read_at.is_(None)) if unread_only else base
    rows = q.order_by(DeliveryLogEntry.created_at.desc(), DeliveryLogEntry.id.desc()).limit(limit).all()
    unread_count = base.filter(DeliveryLogEntry.read_at.is_(None)).count()
    return {"notifications": [_entry_dict(r) for r in rows], "unread_count": unread_count}


def _user_entry(db: Session, user_id: str, entry_id: int) -> DeliveryLogEntry | None:
    return (
        db.query(DeliveryLogEntry)
        .filter(DeliveryLogEntry.id == entry_id, DeliveryLogEntry.user_id == user_id)
        .first()
    )


def mark_read(db: Session, user_id: str, entry_id: int, now: datetime | None = None) -> DeliveryLogEntry | None:
    row = _user_entry(db, user_id, entry_id)
    if row is None:
        return None
    if row.read_at is None:
        row.read_at = now or utcnow()
        db.commit()
    return row


def mark_all_read(db: Session, user_id: str, now: datetime | None = None) -> int:
    """Mark everything read and zero the badge (the explicit read action)."""
    now = now or utcnow()
    updated = (
        db.query(DeliveryLogEntry)
        .filter(DeliveryLogEntry.user_id == user_id, DeliveryLogEntry.read_at.is_(None))
        .update({DeliveryLogEntry.read_at: now}, synchronize_session=False)
    )
    db.commit()
    reset_badge(db, user_id, now=now)
    return updated


def dismiss(db: Session, user_id: str, entry_id: int, now: datetime | None = None) -> bool:
    row = _user_entry(db, user_id, entry_id)
    if row is None:
        return False
    now = now or utcnow()
    if row.dismissed_at is None:
        row.dismissed_at = now
        if row.read_at is None:
            row.read_at = now
        db.commit()
    return True


def cleanup_log(db: Session, retention_days: int, now: datetime | None = None) -> dict[str, int]:
    """Delete delivery log rows and push attempts older than retention_days. Commits."""
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    log_deleted = (
        db.query(DeliveryLogEntry).filter(DeliveryLogEntry.created_at < cutoff).delete(synchronize_session=False)
    )
    attempts_deleted = (
        db.query(PushAttempt).filter(PushAttempt.created_at < cutoff).delete(synchronize_session=False)
    )
    db.commit()
    return {"delivery_log": log_deleted, "push_attempts": attempts_deleted}
