"""One APNs attempt against one device. Append-only; device_token is redacted (first 16 ... last 8)."""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from listing_alerts.db.base import Base


class PushAttempt(Base):
    __tablename__ = "push_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    delivery_log_id = Column(Integer, nullable=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    device_token = Column(String(32), nullable=False)
    notification_type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)  # sent | failed
    apns_status_code = Column(Integer, nullable=True)
    apns_reason = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    is_sandbox = Column(Boolean, nullable=False, default=False)
    source = Column(String(16), nullable=False, default="immediate")  # immediate | deferred | retry
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
