"""
Centralized constants for the scheduler and notification kinds.

Change job IDs or intervals here instead of scattering literals across main and jobs.
Pacing/retry tunables come from delivery_config (env-driven).
"""
# Scheduler job IDs (must match ids used in main.py add_job). Also used as lease names.
CHANGE_EVENTS_JOB_ID = "process_change_events"
DEFERRED_JOB_ID = "process_deferred_notifications"
RETRY_JOB_ID = "process_push_retries"
MAINTENANCE_JOB_ID = "notification_maintenance"

CHANGE_EVENTS_INTERVAL_SECONDS = 60
DEFERRED_INTERVAL_SECONDS = 15 * 60
RETRY_INTERVAL_SECONDS = 60
MAINTENANCE_INTERVAL_SECONDS = 60 * 60

# Lease TTL per job: long enough for a slow run, short enough that a crashed holder frees the job
CHANGE_EVENTS_LEASE_SECONDS = 5 * 60
DEFERRED_LEASE_SECONDS = 10 * 60
RETRY_LEASE_SECONDS = 5 * 60
MAINTENANCE_LEASE_SECONDS = 30 * 60

# Once-per-hour operator alert when the APNs send rate is close to the cap
RATE_ALERT_LEASE_NAME = "push_rate_alert"
RATE_ALERT_INTERVAL_SECONDS = 60 * 60
PUSH_RATE_LIMITER_NAME = "apns"

# Per-run caps so one tick stays bounded
CHANGE_EVENTS_BATCH_LIMIT = 100
CHANGE_EVENT_MAX_ATTEMPTS = 5
DEFERRED_BATCH_LIMIT = 100

# Notification kinds (payload discriminator values)
KIND_NEW_LISTING = "new_listing"
KIND_PRICE_CHANGE = "price_change"
KIND_STATUS_CHANGE = "status_change"
KIND_OPEN_HOUSE = "open_house"
KIND_TOUR_REQUESTED = "tour_requested"

CHANGE_KINDS = (KIND_NEW_LISTING, KIND_PRICE_CHANGE, KIND_STATUS_CHANGE, KIND_OPEN_HOUSE)

# Preference keys stored per user (one push and one email flag each)
PREFERENCE_TYPES = ("new_listing", "price_change", "status_change", "open_house", "saved_search")

# Kinds without their own preference toggle fall back to the saved_search switch
KIND_TO_PREFERENCE = {
    KIND_NEW_LISTING: "new_listing",
    KIND_PRICE_CHANGE: "price_change",
    KIND_STATUS_CHANGE: "status_change",
    KIND_OPEN_HOUSE: "open_house",
    KIND_TOUR_REQUESTED: "saved_search",
}

CHANNEL_PUSH = "push"
CHANNEL_EMAIL = "email"

# Delivery log statuses
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"
