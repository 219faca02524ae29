"""
APNs send pacing: a 1-second window shared by every process that sends pushes.

The window lives in rate_limit_windows and is advanced by a single atomic upsert per request
(start a new window if the old one is over, else count one more hit), so overlapping job runs
and separate workers see one counter.

Pacing per request, with cap C and threshold T% of C:
  hits <= T% of C        -> no delay
  T% of C < hits <= C    -> delay = time left in window / requests left before cap, at most max_delay
  hits > C               -> wait for the window to roll over, then count again
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from listing_alerts.config import settings
from listing_alerts.core.constants import (
    PUSH_RATE_LIMITER_NAME,
    RATE_ALERT_INTERVAL_SECONDS,
    RATE_ALERT_LEASE_NAME,
)
from listing_alerts.core.delivery_config import (
    PUSH_RATE_ALERT_PERCENT,
    PUSH_RATE_LIMIT_PER_SECOND,
    PUSH_RATE_MAX_DELAY_MS,
    PUSH_RATE_THRESHOLD_PERCENT,
)
from listing_alerts.core.errors import StoreError
from listing_alerts.db.upsert import insert_for
from listing_alerts.models.rate_limit_window import RateLimitWindow
from listing_alerts.services.email_notify import send_admin_alert_email
from listing_alerts.services.leases import new_holder_id, try_acquire

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 1.0
# Delays at or below this are not worth a sleep call
MIN_SLEEP_SECONDS = 0.001
# Added to the rollover wait so the next hit lands in the new window
ROLLOVER_MARGIN_SECONDS = 0.001
# After a lost alert race, skip re-checking the shared alert lease for this long
ALERT_RECHECK_SECONDS = 60


class RateWindowStore:
    """Shared window counter. Each call uses its own short transaction so the hit is visible at once."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        name: str = PUSH_RATE_LIMITER_NAME,
        window_seconds: float = WINDOW_SECONDS,
    ):
        self._session_factory = session_factory
        self.name = name
        self.window_seconds = window_seconds

    def hit(self, now: float) -> tuple[int, float]:
        """Count one request at epoch time now. Returns (hits in current window, window start)."""
        db = self._session_factory()
        try:
            insert = insert_for(db)
            rolled_over = RateLimitWindow.window_start <= now - self.window_seconds
            stmt = (
                insert(RateLimitWindow)
                .values(name=self.name, window_start=now, hits=1)
                .on_conflict_do_update(
                    index_elements=["name"],
                    set_={
                        "hits": case((rolled_over, 1), else_=RateLimitWindow.hits + 1),
                        "window_start": case((rolled_over, now), else_=RateLimitWindow.window_start),
                    },
                )
                .returning(RateLimitWindow.hits, RateLimitWindow.window_start)
            )
            hits, window_start = db.execute(stmt).one()
            db.commit()
            return int(hits), float(window_start)
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"Rate window {self.name} update failed: {e}") from e
        finally:
            db.close()

    def peek(self) -> tuple[int, float] | None:
        db = self._session_factory()
        try:
            row = db.get(RateLimitWindow, self.name)
            return (int(row.hits), float(row.window_start)) if row else None
        finally:
            db.close()


class RateAlertNotifier:
    """
    Operator alert when utilization is high. At most one per RATE_ALERT_INTERVAL_SECONDS across all
    processes: the alert lease is taken and never released, so it simply expires.
    """

    def __init__(self, session_factory: Callable[[], Session], admin_email: str | None = None):
        self._session_factory = session_factory
        self._admin_email = admin_email if admin_email is not None else settings.admin_email
        self._quiet_until = 0.0

    def __call__(self, stats: dict[str, Any]) -> bool:
        now_epoch = stats.get("now") or time.time()
        if now_epoch < self._quiet_until:
            return False
        now = datetime.fromtimestamp(now_epoch, tz=timezone.utc)
        db = self._session_factory()
        try:
            acquired = try_acquire(db, RATE_ALERT_LEASE_NAME, new_holder_id(), RATE_ALERT_INTERVAL_SECONDS, now=now)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Rate alert lease check failed: %s", e)
            return False
        finally:
            db.close()
        if not acquired:
            self._quiet_until = now_epoch + ALERT_RECHECK_SECONDS
            return False
        self._quiet_until = now_epoch + RATE_ALERT_INTERVAL_SECONDS
        logger.warning(
            "APNs rate limit utilization at %s%% (%s of %s/s, threshold %s%%)",
            stats.get("utilization_percent"),
            stats.get("count"),
            stats.get("limit"),
            stats.get("threshold_percent"),
        )
        if self._admin_email:
            send_admin_alert_email(
                self._admin_email,
                "Push notification rate limit warning",
                (
                    f"Push notification rate utilization is at {stats.get('utilization_percent')}%.\n"
                    f"Requests in current window: {stats.get('count')} of {stats.get('limit')} per second.\n"
                    "Consider spreading scheduled notification jobs or raising the limit."
                ),
            )
        return True


class SlidingWindowRateLimiter:
    """Call acquire() before every APNs request."""

    def __init__(
        self,
        store: RateWindowStore,
        cap: int = PUSH_RATE_LIMIT_PER_SECOND,
        threshold_percent: int = PUSH_RATE_THRESHOLD_PERCENT,
        alert_percent: int = PUSH_RATE_ALERT_PERCENT,
        max_delay_seconds: float = PUSH_RATE_MAX_DELAY_MS / 1000.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        on_alert: Callable[[dict[str, Any]], Any] | None = None,
    ):
        self._store = store
        self.cap = cap
        self.threshold_percent = threshold_percent
        self.alert_percent = alert_percent
        self.max_delay_seconds = max_delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._on_alert = on_alert

    @property
    def threshold(self) -> int:
        return int(self.cap * self.threshold_percent / 100)

    def compute_delay(self, hits: int, elapsed: float) -> float:
        """Seconds to wait before request number `hits` of the current window (hits <= cap)."""
        if hits <= self.threshold:
            return 0.0
        remaining_time = max(0.0, self._store.window_seconds - elapsed)
        remaining_requests = max(1, self.cap - hits + 1)
        return min(remaining_time / remaining_requests, self.max_delay_seconds)

    def acquire(self) -> float:
        """Count this request and pace it. Returns total seconds slept."""
        slept = 0.0
        while True:
            now = self._clock()
            hits, window_start = self._store.hit(now)
            elapsed = max(0.0, now - window_start)
            if hits > self.cap:
                wait = max(0.0, self._store.window_seconds - elapsed) + ROLLOVER_MARGIN_SECONDS
                logger.debug("Rate limit reached (%s/%s); waiting %.3fs for next window", hits, self.cap, wait)
                self._sleep(wait)
                slept += wait
                continue
            self._maybe_alert(hits, elapsed, now)
            delay = self.compute_delay(hits, elapsed)
            if delay > MIN_SLEEP_SECONDS:
                self._sleep(delay)
                slept += delay
            return slept

    def _maybe_alert(self, hits: int, elapsed: float, now: float) -> None:
        if self._on_alert is None:
            return
        utilization = hits / self.cap * 100
        if utilization < self.alert_percent:
            return
        self._on_alert(self._stats_for(hits, elapsed, now))

    def _stats_for(self, hits: int, elapsed: float, now: float) -> dict[str, Any]:
        in_window = elapsed < self._store.window_seconds
        count = hits if in_window else 0
        return {
            "limit": self.cap,
            "threshold": self.threshold,
            "threshold_percent": self.threshold_percent,
            "count": count,
            "window_age_ms": round(elapsed * 1000, 2),
            "is_throttling": in_window and count > self.threshold,
            "utilization_percent": round(count / self.cap * 100, 1),
            "now": now,
        }

    def stats(self) -> dict[str, Any]:
        """Current window as seen by every process."""
        now = self._clock()
        current = self._store.peek()
        if current is None:
            return self._stats_for(0, self._store.window_seconds, now)
        hits, window_start = current
        return self._stats_for(hits, max(0.0, now - window_start), now)
