"""Delivery log: one row per logical notification per channel, plus skipped decisions.

dedup_signature: user|type|listing-or-title|YYYY-MM-DDTHH (UTC hour bucket). Set on sent/failed rows only,
unique per channel, so overlapping runs and multiple devices collapse into one row.
read_at / dismissed_at: NULL = unread / visible; set from the notifications API.
"""
from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, Index
from sqlalchemy.sql import func

from listing_alerts.db.base import Base, JSONType


class DeliveryLogEntry(Base):
    __tablename__ = "delivery_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    notification_type = Column(String(32), nullable=False)
    listing_id = Column(String(64), nullable=True)
    channel = Column(String(16), nullable=False, default="push")
    title = Column(String(256), nullable=True)
    body = Column(Text, nullable=True)
    payload = Column(JSONType, nullable=True)
    status = Column(String(16), nullable=False)  # sent | failed | skipped
    reason = Column(String(256), nullable=True)
    dedup_signature = Column(String(255), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    dismissed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("channel", "dedup_signature", name="uq_delivery_log_channel_signature"),
        Index("ix_delivery_log_user_type_listing", "user_id", "notification_type", "listing_id"),
    )
