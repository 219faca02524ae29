"""
Mutual-exclusion leases with TTL, stored in job_leases.

One upsert acquires: insert the lease, or take over the existing row only when it has expired.
Works across processes and overlapping scheduler ticks; a crashed holder frees the lease at expiry.
"""
import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from listing_alerts.core.clock import utcnow
from listing_alerts.db.upsert import insert_for
from listing_alerts.models.job_lease import JobLease

logger = logging.getLogger(__name__)


def new_holder_id() -> str:
    """host:pid:random, unique per acquisition attempt."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def try_acquire(db: Session, name: str, holder: str, ttl_seconds: int, now: datetime | None = None) -> bool:
    """Take the lease if free or expired. Commits. Returns True when holder now owns it."""
    now = now or utcnow()
    insert = insert_for(db)
    stmt = (
        insert(JobLease)
        .values(name=name, holder=holder, expires_at=now + timedelta(seconds=ttl_seconds))
        .on_conflict_do_update(
            index_elements=["name"],
            set_={"holder": holder, "expires_at": now + timedelta(seconds=ttl_seconds)},
            where=JobLease.expires_at <= now,
        )
        .returning(JobLease.holder)
    )
    got = db.execute(stmt).scalar()
    db.commit()
    return got == holder


def release(db: Session, name: str, holder: str) -> None:
    """Drop the lease if we still hold it. Someone who took it over after expiry keeps theirs."""
    db.query(JobLease).filter(JobLease.name == name, JobLease.holder == holder).delete(synchronize_session=False)
    db.commit()


@contextmanager
def job_lease(
    session_factory: Callable[[], Session],
    name: str,
    ttl_seconds: int,
    now: datetime | None = None,
) -> Iterator[bool]:
    """
    Acquire-before-run, release-after. Yields True when this caller holds the lease.
    Uses its own short session so the job's transaction never holds the lease row.
    """
    holder = new_holder_id()
    db = session_factory()
    acquired = False
    try:
        try:
            acquired = try_acquire(db, name, holder, ttl_seconds, now=now)
        except SQLAlchemyError as e:
            logger.warning("Lease %s: acquire failed, skipping run: %s", name, e)
            db.rollback()
        if not acquired:
            logger.debug("Lease %s held elsewhere; skipping run", name)
        yield acquired
    finally:
        if acquired:
            try:
                release(db, name, holder)
            except SQLAlchemyError as e:
                # Lease expires on its own
                logger.warning("Lease %s: release failed: %s", name, e)
                db.rollback()
        db.close()
