"""
Preference gate: per-user push/email switches per notification type, plus quiet hours.

Quiet hours are [start, end) in the user's own timezone. start > end wraps midnight
(22:00-08:00: quiet when now >= 22:00 or now < 08:00); start <= end is a same-day window.
Only push is held back by quiet hours; email is never deferred.
"""
import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from listing_alerts.core.clock import utcnow
from listing_alerts.core.constants import CHANNEL_EMAIL, CHANNEL_PUSH, KIND_TO_PREFERENCE, PREFERENCE_TYPES
from listing_alerts.core.delivery_config import (
    QUIET_HOURS_DEFAULT_END,
    QUIET_HOURS_DEFAULT_START,
    QUIET_HOURS_DEFAULT_TIMEZONE,
)
from listing_alerts.db.upsert import insert_for
from listing_alerts.models.notification_preference import NotificationPreference

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")

QUIET_HOURS_FIELDS = ("quiet_hours_enabled", "quiet_hours_start", "quiet_hours_end", "quiet_hours_timezone")
TOGGLE_FIELDS = tuple(f"{t}_{c}" for t in PREFERENCE_TYPES for c in (CHANNEL_PUSH, CHANNEL_EMAIL))


class GateReason(str, enum.Enum):
    ALLOW = "allow"
    DISABLED = "disabled"
    QUIET_HOURS = "quiet_hours"


@dataclass(frozen=True)
class GateDecision:
    send: bool
    reason: GateReason


def sanitize_time(value: str) -> str:
    """'8:00', '08:00' or '08:00:00' -> '08:00'. Raises ValueError for anything else."""
    m = _TIME_RE.match((value or "").strip())
    if not m:
        raise ValueError(f"Invalid time {value!r}; expected HH:MM")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time {value!r}; expected HH:MM")
    return f"{hour:02d}:{minute:02d}"


def _parse_time(value: str | None) -> time:
    """Lenient read of a stored HH:MM; garbage reads as midnight."""
    try:
        hh, mm = sanitize_time(value or "").split(":")
    except ValueError:
        logger.warning("Unreadable quiet-hours time %r; using 00:00", value)
        return time(0, 0)
    return time(int(hh), int(mm))


def validate_timezone(name: str) -> str:
    name = (name or "").strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone {name!r}") from e
    return name


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or QUIET_HOURS_DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; using %s", name, QUIET_HOURS_DEFAULT_TIMEZONE)
        return ZoneInfo(QUIET_HOURS_DEFAULT_TIMEZONE)


def preference_type(notification_type: str) -> str:
    """Preference key that governs a notification type; unknown types fall under new_listing."""
    if notification_type in PREFERENCE_TYPES:
        return notification_type
    return KIND_TO_PREFERENCE.get(notification_type, "new_listing")


def default_preferences(user_id: str) -> NotificationPreference:
    """Unsaved row with the defaults: everything on, quiet hours off."""
    prefs = NotificationPreference(user_id=user_id)
    for field in TOGGLE_FIELDS:
        setattr(prefs, field, True)
    prefs.quiet_hours_enabled = False
    prefs.quiet_hours_start = QUIET_HOURS_DEFAULT_START
    prefs.quiet_hours_end = QUIET_HOURS_DEFAULT_END
    prefs.quiet_hours_timezone = QUIET_HOURS_DEFAULT_TIMEZONE
    return prefs


def get_preferences(db: Session, user_id: str) -> NotificationPreference:
    row = db.query(NotificationPreference).filter(NotificationPreference.user_id == user_id).first()
    return row if row is not None else default_preferences(user_id)


def preferences_to_dict(prefs: NotificationPreference) -> dict[str, Any]:
    out: dict[str, Any] = {"user_id": prefs.user_id}
    for t in PREFERENCE_TYPES:
        out[t] = {
            CHANNEL_PUSH: bool(getattr(prefs, f"{t}_{CHANNEL_PUSH}")),
            CHANNEL_EMAIL: bool(getattr(prefs, f"{t}_{CHANNEL_EMAIL}")),
        }
    out["quiet_hours"] = {
        "enabled": bool(prefs.quiet_hours_enabled),
        "start": prefs.quiet_hours_start,
        "end": prefs.quiet_hours_end,
        "timezone": prefs.quiet_hours_timezone,
    }
    return out


def update_preferences(db: Session, user_id: str, changes: dict[str, Any]) -> NotificationPreference:
    """
    Apply changes (keys from TOGGLE_FIELDS and QUIET_HOURS_FIELDS). Validates times and timezone
    before writing; raises ValueError on bad input. Creates the row with defaults on first save.
    """
    clean: dict[str, Any] = {}
    for key, value in changes.items():
        if value is None:
            continue
        if key in TOGGLE_FIELDS or key == "quiet_hours_enabled":
            clean[key] = bool(value)
        elif key in ("quiet_hours_start", "quiet_hours_end"):
            clean[key] = sanitize_time(value)
        elif key == "quiet_hours_timezone":
            clean[key] = validate_timezone(value)
        else:
            raise ValueError(f"Unknown preference field {key!r}")

    defaults = default_preferences(user_id)
    insert = insert_for(db)
    db.execute(
        insert(NotificationPreference)
        .values(
            user_id=user_id,
            **{f: getattr(defaults, f) for f in TOGGLE_FIELDS + QUIET_HOURS_FIELDS},
        )
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    if clean:
        db.query(NotificationPreference).filter(NotificationPreference.user_id == user_id).update(
            {getattr(NotificationPreference, k): v for k, v in clean.items()}, synchronize_session=False
        )
    db.commit()
    row = db.query(NotificationPreference).filter(NotificationPreference.user_id == user_id).one()
    db.refresh(row)
    return row


def is_push_enabled(db: Session, user_id: str, notification_type: str) -> bool:
    prefs = get_preferences(db, user_id)
    return bool(getattr(prefs, f"{preference_type(notification_type)}_{CHANNEL_PUSH}"))


def is_email_enabled(db: Session, user_id: str, notification_type: str) -> bool:
    prefs = get_preferences(db, user_id)
    return bool(getattr(prefs, f"{preference_type(notification_type)}_{CHANNEL_EMAIL}"))


def in_quiet_window(prefs: NotificationPreference, now: datetime) -> bool:
    if not prefs.quiet_hours_enabled:
        return False
    local_now = now.astimezone(_zone(prefs.quiet_hours_timezone)).time().replace(second=0, microsecond=0)
    start = _parse_time(prefs.quiet_hours_start)
    end = _parse_time(prefs.quiet_hours_end)
    if start > end:
        return local_now >= start or local_now < end
    return start <= local_now < end


def is_quiet_hours(db: Session, user_id: str, now: datetime | None = None) -> bool:
    return in_quiet_window(get_preferences(db, user_id), now or utcnow())


def should_send_now(
    db: Session,
    user_id: str,
    notification_type: str,
    channel: str = CHANNEL_PUSH,
    now: datetime | None = None,
) -> GateDecision:
    prefs = get_preferences(db, user_id)
    flag = f"{preference_type(notification_type)}_{channel}"
    if not bool(getattr(prefs, flag, False)):
        return GateDecision(False, GateReason.DISABLED)
    if channel == CHANNEL_PUSH and in_quiet_window(prefs, now or utcnow()):
        return GateDecision(False, GateReason.QUIET_HOURS)
    return GateDecision(True, GateReason.ALLOW)


def quiet_hours_end(prefs: NotificationPreference, now: datetime | None = None) -> datetime:
    """
    Next time the quiet window ends, as UTC. Inside an overnight window before midnight the end is
    tomorrow; after midnight it is today.
    """
    now = now or utcnow()
    tz = _zone(prefs.quiet_hours_timezone)
    local_now = now.astimezone(tz)
    start = _parse_time(prefs.quiet_hours_start)
    end = _parse_time(prefs.quiet_hours_end)
    candidate = datetime.combine(local_now.date(), end, tzinfo=tz)
    if start > end and local_now.time() >= start:
        candidate += timedelta(days=1)
    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate.astimezone(timezone.utc)
