"""
INSERT ... ON CONFLICT for the session's dialect.

PostgreSQL in production, SQLite for local runs and tests. Both constructs expose
on_conflict_do_update / on_conflict_do_nothing with index_elements, so callers write one
statement and stay parameterized.
"""
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session


def insert_for(db: Session):
    """Return the dialect-specific insert() for db's bind."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert
