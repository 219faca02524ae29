"""Wiring for jobs and routes: one APNs transport and the shared, DB-backed rate limiter."""
from listing_alerts.db.session import SessionLocal
from listing_alerts.services.push.apns import ApnsTransport
from listing_alerts.services.push.rate_limiter import RateAlertNotifier, RateWindowStore, SlidingWindowRateLimiter


def build_transport() -> ApnsTransport:
    return ApnsTransport()


def build_rate_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(RateWindowStore(SessionLocal), on_alert=RateAlertNotifier(SessionLocal))
