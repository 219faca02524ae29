"""
Notification history for the signed-in user, backed by the delivery log.

Supports: list (with unread filter), mark one read, mark all read (also zeroes the badge),
dismiss, and the badge count.
"""
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from listing_alerts.api.deps import current_user_id
from listing_alerts.core.clock import as_utc
from listing_alerts.db.session import get_db
from listing_alerts.services import dedup
from listing_alerts.services.badges import get_badge_data

router = APIRouter()
logger = logging.getLogger(__name__)


# --- List ---


@router.get("/notifications")
def list_notifications(
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
    limit: int = Query(80, ge=1, le=200),
    unread_only: bool = Query(False),
) -> dict[str, Any]:
    """Delivered notifications, newest first. unread_only=true for the unread view."""
    return dedup.list_history(db, user_id, limit=limit, unread_only=unread_only)


# --- Badge ---


@router.get("/notifications/badge")
def badge(db: Session = Depends(get_db), user_id: str = Depends(current_user_id)) -> dict[str, Any]:
    return get_badge_data(db, user_id)


# --- Mark one read ---


@router.patch("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
) -> dict[str, Any]:
    row = dedup.mark_read(db, user_id, notification_id)
    if row is None:
        return {"ok": False, "error": "not_found"}
    return {"ok": True, "id": notification_id, "read_at": as_utc(row.read_at).isoformat()}


# --- Mark all read ---


@router.post("/notifications/mark-all-read")
def mark_all_read(db: Session = Depends(get_db), user_id: str = Depends(current_user_id)) -> dict[str, Any]:
    """'Clear all' in the app: everything read, badge back to 0."""
    updated = dedup.mark_all_read(db, user_id)
    return {"ok": True, "marked_count": updated}


# --- Dismiss ---


@router.post("/notifications/{notification_id}/dismiss")
def dismiss_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
) -> dict[str, Any]:
    if not dedup.dismiss(db, user_id, notification_id):
        return {"ok": False, "error": "not_found"}
    return {"ok": True, "id": notification_id}
