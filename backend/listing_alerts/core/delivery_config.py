"""
Delivery workload config. .env is the source of truth; these defaults apply only when
the env var is unset. All values read at import time.

Env vars: PUSH_RATE_LIMIT_PER_SECOND, PUSH_RATE_THRESHOLD_PERCENT, PUSH_RATE_ALERT_PERCENT,
PUSH_RATE_MAX_DELAY_MS, PUSH_RETRY_BASE_DELAY_SECONDS, PUSH_RETRY_MAX_RETRIES,
PUSH_RETRY_BATCH_SIZE, PUSH_RETRY_EXPIRE_HOURS, PUSH_TIMEOUT_SECONDS,
QUIET_HOURS_DEFAULT_START, QUIET_HOURS_DEFAULT_END, QUIET_HOURS_DEFAULT_TIMEZONE,
DEDUP_WINDOW_HOURS, DEFERRED_DEDUP_HOURS, MARKET_PRICE_RATIO, MARKET_PPSF_RATIO,
DELIVERY_LOG_RETENTION_DAYS (7–365), DEFERRED_RETENTION_DAYS (1–90),
ENDPOINT_STALE_DAYS, ENDPOINT_PURGE_DAYS.

Verify the effective values in the startup log line below.
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load backend/.env so jobs, tests and scripts that import this module see the same env as main.py
_backend_dir = Path(__file__).resolve().parent.parent.parent
load_dotenv(_backend_dir / ".env", override=False)

_log = logging.getLogger(__name__)


def _int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    raw = os.environ.get(key)
    if raw is None:
        v = default
    else:
        try:
            v = int(raw.strip())
        except ValueError:
            v = default
    if min_val is not None and v < min_val:
        v = min_val
    if max_val is not None and v > max_val:
        v = max_val
    return v


def _float(key: str, default: float, min_val: float | None = None, max_val: float | None = None) -> float:
    raw = os.environ.get(key)
    if raw is None:
        v = default
    else:
        try:
            v = float(raw.strip())
        except ValueError:
            v = default
    if min_val is not None and v < min_val:
        v = min_val
    if max_val is not None and v > max_val:
        v = max_val
    return v


def _str(key: str, default: str) -> str:
    return (os.environ.get(key) or "").strip() or default


# -----------------------------------------------------------------------------
# Rate limiting (shared 1-second window across every sender)
# -----------------------------------------------------------------------------
PUSH_RATE_LIMIT_PER_SECOND = _int("PUSH_RATE_LIMIT_PER_SECOND", 500, min_val=1, max_val=10_000)
PUSH_RATE_THRESHOLD_PERCENT = _int("PUSH_RATE_THRESHOLD_PERCENT", 60, min_val=1, max_val=100)
PUSH_RATE_ALERT_PERCENT = _int("PUSH_RATE_ALERT_PERCENT", 80, min_val=1, max_val=100)
PUSH_RATE_MAX_DELAY_MS = _int("PUSH_RATE_MAX_DELAY_MS", 100, min_val=1, max_val=1000)

# -----------------------------------------------------------------------------
# Transport and retry policy
# -----------------------------------------------------------------------------
PUSH_TIMEOUT_SECONDS = _float("PUSH_TIMEOUT_SECONDS", 30.0, min_val=1.0, max_val=120.0)
PUSH_RETRY_BASE_DELAY_SECONDS = _int("PUSH_RETRY_BASE_DELAY_SECONDS", 60, min_val=1, max_val=3600)
PUSH_RETRY_MAX_RETRIES = _int("PUSH_RETRY_MAX_RETRIES", 5, min_val=1, max_val=10)
PUSH_RETRY_BATCH_SIZE = _int("PUSH_RETRY_BATCH_SIZE", 50, min_val=1, max_val=500)
PUSH_RETRY_EXPIRE_HOURS = _int("PUSH_RETRY_EXPIRE_HOURS", 24, min_val=1, max_val=168)

# -----------------------------------------------------------------------------
# Quiet hours defaults (used when a user has no preference row)
# -----------------------------------------------------------------------------
QUIET_HOURS_DEFAULT_START = _str("QUIET_HOURS_DEFAULT_START", "22:00")
QUIET_HOURS_DEFAULT_END = _str("QUIET_HOURS_DEFAULT_END", "08:00")
QUIET_HOURS_DEFAULT_TIMEZONE = _str("QUIET_HOURS_DEFAULT_TIMEZONE", "America/New_York")

# -----------------------------------------------------------------------------
# Dedup windows
# -----------------------------------------------------------------------------
DEDUP_WINDOW_HOURS = _int("DEDUP_WINDOW_HOURS", 24, min_val=1, max_val=168)
DEFERRED_DEDUP_HOURS = _int("DEFERRED_DEDUP_HOURS", 24, min_val=1, max_val=168)

# -----------------------------------------------------------------------------
# Matching: "below market value" bonus ratios against area averages
# -----------------------------------------------------------------------------
MARKET_PRICE_RATIO = _float("MARKET_PRICE_RATIO", 0.90, min_val=0.1, max_val=1.0)
MARKET_PPSF_RATIO = _float("MARKET_PPSF_RATIO", 0.85, min_val=0.1, max_val=1.0)

# -----------------------------------------------------------------------------
# Retention
# -----------------------------------------------------------------------------
DELIVERY_LOG_RETENTION_DAYS = _int("DELIVERY_LOG_RETENTION_DAYS", 30, min_val=7, max_val=365)
DEFERRED_RETENTION_DAYS = _int("DEFERRED_RETENTION_DAYS", 7, min_val=1, max_val=90)
RETRY_COMPLETED_RETENTION_DAYS = _int("RETRY_COMPLETED_RETENTION_DAYS", 7, min_val=1, max_val=90)
RETRY_FAILED_RETENTION_DAYS = _int("RETRY_FAILED_RETENTION_DAYS", 30, min_val=1, max_val=365)
ENDPOINT_STALE_DAYS = _int("ENDPOINT_STALE_DAYS", 90, min_val=7, max_val=365)
ENDPOINT_PURGE_DAYS = _int("ENDPOINT_PURGE_DAYS", 180, min_val=30, max_val=730)

# Log effective config at import so each environment can verify env vars are applied
_log.info(
    "Delivery config (from env): rate_limit=%s/s threshold=%s%% alert=%s%% retry_base=%ss "
    "max_retries=%s quiet_hours_default=%s-%s %s market_ratios=%s/%s",
    PUSH_RATE_LIMIT_PER_SECOND,
    PUSH_RATE_THRESHOLD_PERCENT,
    PUSH_RATE_ALERT_PERCENT,
    PUSH_RETRY_BASE_DELAY_SECONDS,
    PUSH_RETRY_MAX_RETRIES,
    QUIET_HOURS_DEFAULT_START,
    QUIET_HOURS_DEFAULT_END,
    QUIET_HOURS_DEFAULT_TIMEZONE,
    MARKET_PRICE_RATIO,
    MARKET_PPSF_RATIO,
)

