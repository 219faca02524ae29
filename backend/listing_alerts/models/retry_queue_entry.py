"""APNs send waiting for another attempt after a transient failure.

status: pending -> processing -> completed | failed (dead letter) | expired, or back to pending with a
later next_retry_at. retry_count never exceeds max_retries.
"""
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from listing_alerts.db.base import Base, JSONType


class RetryQueueEntry(Base):
    __tablename__ = "push_retry_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    endpoint_id = Column(Integer, nullable=True)
    device_token = Column(String(256), nullable=False)
    payload = Column(JSONType, nullable=False)  # APNs request body as sent
    notification_type = Column(String(32), nullable=False)
    delivery_log_id = Column(Integer, nullable=True)
    is_sandbox = Column(Boolean, nullable=False, default=False)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=5)
    last_error = Column(Text, nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (Index("ix_push_retry_queue_status_next_retry_at", "status", "next_retry_at"),)
