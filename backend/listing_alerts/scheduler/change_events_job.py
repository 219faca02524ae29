"""Runs every minute: turn unprocessed listing change events into push / email notifications."""
import logging

from listing_alerts.core.constants import CHANGE_EVENTS_JOB_ID, CHANGE_EVENTS_LEASE_SECONDS
from listing_alerts.core.errors import ConfigurationError
from listing_alerts.db.session import SessionLocal
from listing_alerts.services.leases import job_lease
from listing_alerts.services.orchestrator import process_pending_events
from listing_alerts.services.push.factory import build_rate_limiter, build_transport

logger = logging.getLogger(__name__)


def run_change_events_job() -> None:
    with job_lease(SessionLocal, CHANGE_EVENTS_JOB_ID, CHANGE_EVENTS_LEASE_SECONDS) as acquired:
        if not acquired:
            return
        db = SessionLocal()
        try:
            with build_transport() as transport:
                process_pending_events(db, transport, build_rate_limiter())
        except ConfigurationError as e:
            # No credentials: nothing is sent and events stay unprocessed until fixed
            logger.error("Change events job aborted: %s", e)
            db.rollback()
        except Exception as e:
            logger.exception("Change events job failed: %s", e)
            db.rollback()
        finally:
            db.close()
