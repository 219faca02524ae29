"""Per-user unread badge count shown on the app icon."""
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from listing_alerts.core.clock import as_utc, utcnow
from listing_alerts.db.upsert import insert_for
from listing_alerts.models.badge_count import BadgeCount

logger = logging.getLogger(__name__)


def increment_badge(db: Session, user_id: str, now: datetime | None = None) -> int:
    """Atomically add one unread and return the new count. Commits."""
    now = now or utcnow()
    insert = insert_for(db)
    stmt = (
        insert(BadgeCount)
        .values(user_id=user_id, unread_count=1, last_notification_at=now)
        .on_conflict_do_update(
            index_elements=["user_id"],
            set_={"unread_count": BadgeCount.unread_count + 1, "last_notification_at": now},
        )
        .returning(BadgeCount.unread_count)
    )
    count = db.execute(stmt).scalar()
    db.commit()
    return int(count or 1)


def get_badge_count(db: Session, user_id: str) -> int:
    row = db.get(BadgeCount, user_id)
    return int(row.unread_count) if row else 0


def get_badge_data(db: Session, user_id: str) -> dict[str, Any]:
    row = db.get(BadgeCount, user_id)
    if not row:
        return {"user_id": user_id, "unread_count": 0, "last_notification_at": None, "last_read_at": None}
    last_notification_at = as_utc(row.last_notification_at)
    last_read_at = as_utc(row.last_read_at)
    return {
        "user_id": user_id,
        "unread_count": int(row.unread_count),
        "last_notification_at": last_notification_at.isoformat() if last_notification_at else None,
        "last_read_at": last_read_at.isoformat() if last_read_at else None,
    }


def reset_badge(db: Session, user_id: str, now: datetime | None = None) -> None:
    """Zero the count on an explicit read action."""
    now = now or utcnow()
    insert = insert_for(db)
    stmt = (
        insert(BadgeCount)
        .values(user_id=user_id, unread_count=0, last_read_at=now)
        .on_conflict_do_update(index_elements=["user_id"], set_={"unread_count": 0, "last_read_at": now})
    )
    db.execute(stmt)
    db.commit()
    logger.debug("Badge reset for user %s", user_id)
