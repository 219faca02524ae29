from listing_alerts.db.base import Base
from listing_alerts.db.session import get_db, engine, SessionLocal
from listing_alerts.db.tables import ALL_TABLE_NAMES

__all__ = ["get_db", "engine", "SessionLocal", "Base", "ALL_TABLE_NAMES"]
