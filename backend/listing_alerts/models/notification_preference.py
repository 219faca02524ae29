"""Per-user notification switches: push/email per type plus quiet hours.

One row per user. No row = defaults (all enabled, quiet hours off).
quiet_hours_start / quiet_hours_end: 'HH:MM' in quiet_hours_timezone (IANA name).
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from listing_alerts.db.base import Base


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)

    new_listing_push = Column(Boolean, nullable=False, default=True)
    new_listing_email = Column(Boolean, nullable=False, default=True)
    price_change_push = Column(Boolean, nullable=False, default=True)
    price_change_email = Column(Boolean, nullable=False, default=True)
    status_change_push = Column(Boolean, nullable=False, default=True)
    status_change_email = Column(Boolean, nullable=False, default=True)
    open_house_push = Column(Boolean, nullable=False, default=True)
    open_house_email = Column(Boolean, nullable=False, default=True)
    saved_search_push = Column(Boolean, nullable=False, default=True)
    saved_search_email = Column(Boolean, nullable=False, default=True)

    quiet_hours_enabled = Column(Boolean, nullable=False, default=False)
    quiet_hours_start = Column(String(5), nullable=False, default="22:00")
    quiet_hours_end = Column(String(5), nullable=False, default="08:00")
    quiet_hours_timezone = Column(String(64), nullable=False, default="America/New_York")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
