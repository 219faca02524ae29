"""Push held back by quiet hours. Sent by the deferred job once deliver_after passes.

payload: the tagged notification payload (kind + fields) as JSON.
processed_at: set when a drain claims the row; status then moves to sent | failed | skipped.
"""
from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from listing_alerts.db.base import Base, JSONType


class DeferredNotification(Base):
    __tablename__ = "deferred_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    notification_type = Column(String(32), nullable=False)
    listing_id = Column(String(64), nullable=True)
    payload = Column(JSONType, nullable=False)
    deliver_after = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending | sent | failed | skipped
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_deferred_notifications_status_deliver_after", "status", "deliver_after"),)
