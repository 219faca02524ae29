"""
Device endpoint registry: APNs tokens per user and their lifecycle.

active -> invalid (APNs said Unregistered/410) or stale (unused for ENDPOINT_STALE_DAYS).
Deactivation is a single UPDATE; only register() (a fresh registration from the app) reactivates.
Inactive rows are deleted after ENDPOINT_PURGE_DAYS.
"""
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from listing_alerts.core.clock import utcnow
from listing_alerts.core.delivery_config import ENDPOINT_PURGE_DAYS, ENDPOINT_STALE_DAYS
from listing_alerts.db.upsert import insert_for
from listing_alerts.models.device_endpoint import DeviceEndpoint
from listing_alerts.services.push.apns import redact_token

logger = logging.getLogger(__name__)

REASON_UNREGISTERED = "unregistered"
REASON_STALE = "stale"
REASON_USER = "user_unregistered"


def register(
    db: Session,
    user_id: str,
    device_token: str,
    platform: str = "ios",
    is_sandbox: bool = False,
    now: datetime | None = None,
) -> DeviceEndpoint:
    """Upsert (user, token) as active. Idempotent; reactivates a previously deactivated token."""
    now = now or utcnow()
    device_token = device_token.strip()
    insert = insert_for(db)
    stmt = (
        insert(DeviceEndpoint)
        .values(
            user_id=user_id,
            device_token=device_token,
            platform=platform,
            is_sandbox=is_sandbox,
            is_active=True,
            last_used_at=now,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_update(
            index_elements=["user_id", "device_token"],
            set_={
                "platform": platform,
                "is_sandbox": is_sandbox,
                "is_active": True,
                "deactivated_at": None,
                "deactivation_reason": None,
                "last_used_at": now,
                "updated_at": now,
            },
        )
    )
    db.execute(stmt)
    db.commit()
    row = (
        db.query(DeviceEndpoint)
        .filter(DeviceEndpoint.user_id == user_id, DeviceEndpoint.device_token == device_token)
        .one()
    )
    logger.info("Registered %s endpoint %s for user %s", platform, redact_token(device_token), user_id)
    return row


def unregister(db: Session, user_id: str, device_token: str, now: datetime | None = None) -> bool:
    """User-initiated removal (logout). Returns False if the token was not active for this user."""
    now = now or utcnow()
    updated = (
        db.query(DeviceEndpoint)
        .filter(
            DeviceEndpoint.user_id == user_id,
            DeviceEndpoint.device_token == device_token.strip(),
            DeviceEndpoint.is_active.is_(True),
        )
        .update(
            {
                DeviceEndpoint.is_active: False,
                DeviceEndpoint.deactivated_at: now,
                DeviceEndpoint.deactivation_reason: REASON_USER,
                DeviceEndpoint.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated > 0


def active_endpoints(db: Session, user_id: str, platform: str = "ios") -> list[DeviceEndpoint]:
    """Active endpoints for a user, most recently used first."""
    return (
        db.query(DeviceEndpoint)
        .filter(
            DeviceEndpoint.user_id == user_id,
            DeviceEndpoint.platform == platform,
            DeviceEndpoint.is_active.is_(True),
        )
        .order_by(DeviceEndpoint.last_used_at.desc(), DeviceEndpoint.id.asc())
        .all()
    )


def touch(db: Session, endpoint_id: int, now: datetime | None = None) -> None:
    """Record a successful delivery. Caller commits."""
    now = now or utcnow()
    db.query(DeviceEndpoint).filter(DeviceEndpoint.id == endpoint_id).update(
        {DeviceEndpoint.last_used_at: now}, synchronize_session=False
    )


def deactivate_token(
    db: Session,
    device_token: str,
    reason: str = REASON_UNREGISTERED,
    now: datetime | None = None,
) -> int:
    """
    Deactivate every active row with this token (APNs tokens are per device, not per user).
    Caller commits. Returns rows changed; 0 when another worker already did it.
    """
    now = now or utcnow()
    updated = (
        db.query(DeviceEndpoint)
        .filter(DeviceEndpoint.device_token == device_token, DeviceEndpoint.is_active.is_(True))
        .update(
            {
                DeviceEndpoint.is_active: False,
                DeviceEndpoint.deactivated_at: now,
                DeviceEndpoint.deactivation_reason: reason,
                DeviceEndpoint.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if updated:
        logger.info("Deactivated endpoint %s (%s)", redact_token(device_token), reason)
    return updated


def purge_stale(db: Session, now: datetime | None = None) -> dict[str, int]:
    """
    Deactivate endpoints unused for ENDPOINT_STALE_DAYS, delete inactive ones older than
    ENDPOINT_PURGE_DAYS. Commits.
    """
    now = now or utcnow()
    stale_cutoff = now - timedelta(days=ENDPOINT_STALE_DAYS)
    purge_cutoff = now - timedelta(days=ENDPOINT_PURGE_DAYS)
    deactivated = (
        db.query(DeviceEndpoint)
        .filter(
            DeviceEndpoint.is_active.is_(True),
            or_(
                DeviceEndpoint.last_used_at < stale_cutoff,
                and_(DeviceEndpoint.last_used_at.is_(None), DeviceEndpoint.created_at < stale_cutoff),
            ),
        )
        .update(
            {
                DeviceEndpoint.is_active: False,
                DeviceEndpoint.deactivated_at: now,
                DeviceEndpoint.deactivation_reason: REASON_STALE,
                DeviceEndpoint.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    deleted = (
        db.query(DeviceEndpoint)
        .filter(DeviceEndpoint.is_active.is_(False), DeviceEndpoint.updated_at < purge_cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deactivated or deleted:
        logger.info("Endpoint cleanup: deactivated %s stale, deleted %s inactive", deactivated, deleted)
    return {"deactivated": deactivated, "deleted": deleted}


def get_stats(db: Session, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()

    def count(*criteria) -> int:
        return db.query(func.count(DeviceEndpoint.id)).filter(*criteria).scalar() or 0

    active = DeviceEndpoint.is_active.is_(True)
    return {
        "total": count(),
        "active": count(active),
        "inactive": count(DeviceEndpoint.is_active.is_(False)),
        "sandbox": count(active, DeviceEndpoint.is_sandbox.is_(True)),
        "production": count(active, DeviceEndpoint.is_sandbox.is_(False)),
        "stale_30d": count(active, DeviceEndpoint.last_used_at < now - timedelta(days=30)),
        "stale_90d": count(active, DeviceEndpoint.last_used_at < now - timedelta(days=90)),
    }
