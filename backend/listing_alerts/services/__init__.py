from listing_alerts.services.badges import get_badge_count, increment_badge, reset_badge
from listing_alerts.services.preferences import get_preferences, should_send_now, update_preferences

__all__ = ["get_badge_count", "increment_badge", "reset_badge", "get_preferences", "should_send_now", "update_preferences"]
