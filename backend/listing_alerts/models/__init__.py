from listing_alerts.models.badge_count import BadgeCount
from listing_alerts.models.deferred_notification import DeferredNotification
from listing_alerts.models.delivery_log import DeliveryLogEntry
from listing_alerts.models.device_endpoint import DeviceEndpoint
from listing_alerts.models.favorite import Favorite
from listing_alerts.models.job_lease import JobLease
from listing_alerts.models.listing_change_event import ListingChangeEvent
from listing_alerts.models.notification_preference import NotificationPreference
from listing_alerts.models.push_attempt import PushAttempt
from listing_alerts.models.rate_limit_window import RateLimitWindow
from listing_alerts.models.retry_queue_entry import RetryQueueEntry
from listing_alerts.models.saved_search import SavedSearch

__all__ = [
    "BadgeCount",
    "DeferredNotification",
    "DeliveryLogEntry",
    "DeviceEndpoint",
    "Favorite",
    "JobLease",
    "ListingChangeEvent",
    "NotificationPreference",
    "PushAttempt",
    "RateLimitWindow",
    "RetryQueueEntry",
    "SavedSearch",
]
