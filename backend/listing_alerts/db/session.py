"""
Database session and engine.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from listing_alerts.config import settings
from listing_alerts.db.base import Base

# Pool sizing applies to server databases; SQLite (local runs) uses its default pool
_pool_options = (
    {}
    if settings.database_url.startswith("sqlite")
    else {
        "pool_size": 8,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_timeout": 30,
    }
)

engine = create_engine(settings.database_url, **_pool_options)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
