"""Saved search: a user's persisted listing filter. Owned by the search-management UI; read-only here.

filters: JSON criteria (min_price, max_price, city, zip_code, polygon_shapes, center_lat/center_lng/radius_miles,
property_type, min_sqft/max_sqft, min_bedrooms, min_bathrooms, features, min_school_rating).
notification_frequency: 'instant' | 'hourly' | 'daily'; NULL or 'none' = never notify.
Only 'instant' searches are pushed here; hourly and daily summaries belong to the summary mailer.
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, true
from sqlalchemy.sql import func

from listing_alerts.db.base import Base, JSONType


class SavedSearch(Base):
    __tablename__ = "saved_searches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    owner_email = Column(String(256), nullable=True)
    name = Column(String(256), nullable=False, server_default="")
    filters = Column(JSONType, nullable=False, default=dict)
    notification_frequency = Column(String(16), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
