"""Device push endpoint (APNs token) per user.

Active until APNs reports it unregistered (deactivation_reason='unregistered') or it goes unused
long enough to be considered stale ('stale'). Only a fresh registration reactivates it.
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from listing_alerts.db.base import Base


class DeviceEndpoint(Base):
    __tablename__ = "device_endpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    device_token = Column(String(256), nullable=False, index=True)
    platform = Column(String(16), nullable=False, server_default="ios")
    is_sandbox = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    deactivation_reason = Column(String(32), nullable=True)  # 'unregistered' | 'stale'
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "device_token", name="uq_device_endpoints_user_token"),)
