"""Runs every 15 min: deliver pushes held back by quiet hours once their window has ended."""
import logging

from listing_alerts.core.constants import DEFERRED_JOB_ID, DEFERRED_LEASE_SECONDS
from listing_alerts.core.errors import ConfigurationError
from listing_alerts.db.session import SessionLocal
from listing_alerts.services.leases import job_lease
from listing_alerts.services.orchestrator import process_deferred
from listing_alerts.services.push.factory import build_rate_limiter, build_transport

logger = logging.getLogger(__name__)


def run_deferred_job() -> None:
    with job_lease(SessionLocal, DEFERRED_JOB_ID, DEFERRED_LEASE_SECONDS) as acquired:
        if not acquired:
            return
        db = SessionLocal()
        try:
            with build_transport() as transport:
                process_deferred(db, transport, build_rate_limiter())
        except ConfigurationError as e:
            logger.error("Deferred job aborted: %s", e)
            db.rollback()
        except Exception as e:
            logger.exception("Deferred job failed: %s", e)
            db.rollback()
        finally:
            db.close()
