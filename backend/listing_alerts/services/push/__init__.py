from listing_alerts.services.push.apns import ApnsTokenProvider, ApnsTransport, redact_token
from listing_alerts.services.push.payloads import NotificationPayload, build_apns_payload, parse_payload

__all__ = ["ApnsTokenProvider", "ApnsTransport", "redact_token", "NotificationPayload", "build_apns_payload", "parse_payload"]
