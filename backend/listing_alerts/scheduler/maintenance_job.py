"""
Runs hourly: expire stuck retries and prune old rows.

retry queue: pending/processing older than 24h -> expired; completed deleted after 7 days,
failed/expired after 30. delivery log and push attempts after DELIVERY_LOG_RETENTION_DAYS.
deferred rows DEFERRED_RETENTION_DAYS after processing. Endpoints unused for 90 days are
deactivated, inactive ones deleted after 180.
"""
import logging
from datetime import datetime

from listing_alerts.core.clock import utcnow
from listing_alerts.core.constants import MAINTENANCE_JOB_ID, MAINTENANCE_LEASE_SECONDS
from listing_alerts.core.delivery_config import DEFERRED_RETENTION_DAYS, DELIVERY_LOG_RETENTION_DAYS
from listing_alerts.db.session import SessionLocal
from listing_alerts.services import dedup, deferred_queue
from listing_alerts.services.leases import job_lease
from listing_alerts.services.push import endpoints as endpoint_registry
from listing_alerts.services.push import retry_queue

logger = logging.getLogger(__name__)


def run_maintenance(db, now: datetime | None = None) -> dict:
    now = now or utcnow()
    result = {
        "retries_expired": retry_queue.expire_stale(db, now=now),
        "retries_deleted": retry_queue.cleanup(db, now=now),
        "log": dedup.cleanup_log(db, DELIVERY_LOG_RETENTION_DAYS, now=now),
        "deferred_deleted": deferred_queue.cleanup(db, DEFERRED_RETENTION_DAYS, now=now),
        "endpoints": endpoint_registry.purge_stale(db, now=now),
    }
    logger.info("Notification maintenance: %s", result)
    return result


def run_maintenance_job() -> None:
    with job_lease(SessionLocal, MAINTENANCE_JOB_ID, MAINTENANCE_LEASE_SECONDS) as acquired:
        if not acquired:
            return
        db = SessionLocal()
        try:
            run_maintenance(db)
        except Exception as e:
            logger.exception("Maintenance job failed: %s", e)
            db.rollback()
        finally:
            db.close()
