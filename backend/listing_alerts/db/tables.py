"""
Single source of truth for database tables that exist after migrations (001).

Use these names when writing raw SQL (e.g. TRUNCATE).
"""
# All tables that exist in the DB. Must match models and migration 001.
ALL_TABLE_NAMES = (
    "saved_searches",
    "favorites",
    "listing_change_events",
    "notification_preferences",
    "device_endpoints",
    "delivery_log",
    "push_attempts",
    "deferred_notifications",
    "push_retry_queue",
    "badge_counts",
    "job_leases",
    "rate_limit_windows",
)
