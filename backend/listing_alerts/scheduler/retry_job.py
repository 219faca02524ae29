"""Runs every minute: resend pushes whose retry time has come."""
import logging

from listing_alerts.core.constants import RETRY_JOB_ID, RETRY_LEASE_SECONDS
from listing_alerts.core.errors import ConfigurationError
from listing_alerts.db.session import SessionLocal
from listing_alerts.services.leases import job_lease
from listing_alerts.services.push import retry_queue
from listing_alerts.services.push.factory import build_rate_limiter, build_transport

logger = logging.getLogger(__name__)


def run_retry_job() -> None:
    with job_lease(SessionLocal, RETRY_JOB_ID, RETRY_LEASE_SECONDS) as acquired:
        if not acquired:
            return
        db = SessionLocal()
        try:
            if not retry_queue.due(db, limit=1):
                return
            with build_transport() as transport:
                transport.ensure_configured()
                counts = retry_queue.process_due(db, transport, build_rate_limiter())
            logger.info("Retry queue: %s", counts)
        except ConfigurationError as e:
            logger.error("Retry job aborted: %s", e)
            db.rollback()
        except Exception as e:
            logger.exception("Retry job failed: %s", e)
            db.rollback()
        finally:
            db.close()
