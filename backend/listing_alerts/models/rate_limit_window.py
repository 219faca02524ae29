"""Shared rate window: hits counted since window_start (epoch seconds). One row per limiter name."""
from sqlalchemy import Column, Float, Integer, String

from listing_alerts.db.base import Base


class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"

    name = Column(String(64), primary_key=True)
    window_start = Column(Float, nullable=False)
    hits = Column(Integer, nullable=False, default=0)
