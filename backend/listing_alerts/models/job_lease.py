"""Mutual-exclusion lease with TTL. A row is held by `holder` until expires_at; any process may take it after."""
from sqlalchemy import Column, DateTime, String

from listing_alerts.db.base import Base


class JobLease(Base):
    __tablename__ = "job_leases"

    name = Column(String(64), primary_key=True)
    holder = Column(String(128), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
