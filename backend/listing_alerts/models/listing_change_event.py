"""Listing change produced by ingestion. The change-events job picks rows with processed_at NULL.

listing_snapshot: listing fields at the time of the change (price, address, beds, geo, remarks, ...).
previous_value / current_value: before/after (price or status); details: kind-specific extras
such as open-house start/end.
"""
from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from listing_alerts.db.base import Base, JSONType


class ListingChangeEvent(Base):
    __tablename__ = "listing_change_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(String(64), nullable=False, index=True)
    change_kind = Column(String(32), nullable=False)  # new_listing | price_change | status_change | open_house
    previous_value = Column(String(128), nullable=True)
    current_value = Column(String(128), nullable=True)
    listing_snapshot = Column(JSONType, nullable=False, default=dict)
    details = Column(JSONType, nullable=True)
    occurred_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True, index=True)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)
