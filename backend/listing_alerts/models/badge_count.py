"""Unread badge count per user. Incremented atomically on each delivered notification; reset on read."""
from sqlalchemy import Column, DateTime, Integer, String

from listing_alerts.db.base import Base


class BadgeCount(Base):
    __tablename__ = "badge_counts"

    user_id = Column(String(64), primary_key=True)
    unread_count = Column(Integer, nullable=False, default=0)
    last_notification_at = Column(DateTime(timezone=True), nullable=True)
    last_read_at = Column(DateTime(timezone=True), nullable=True)
