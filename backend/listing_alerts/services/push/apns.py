"""
Send push notifications via Apple Push Notification service (APNs), token-based auth.

Requires APNS_KEY_ID, APNS_TEAM_ID, APNS_BUNDLE_ID, and APNS_KEY_P8_PATH or APNS_KEY_P8_BASE64 in env.
Missing credentials raise ConfigurationError so a job can stop the whole batch before sending anything.

Provider token: ES256 JWT, header {alg, kid}, claims {iss: team id, iat}. PyJWT signs with the P-256
key and emits the raw 64-byte r||s signature APNs expects (not DER). Cached for 50 minutes; APNs
rejects tokens older than one hour.

Failure classification:
  200                                    -> delivered
  410 or reason Unregistered             -> PermanentEndpointError (deactivate, never retry)
  429, 5xx, network error, timeout       -> TransportError (retry queue)
  other 4xx                              -> PayloadOrAuthError (log, give up)
"""
import base64
import binascii
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import httpx
import jwt

from listing_alerts.config import settings
from listing_alerts.core.delivery_config import PUSH_TIMEOUT_SECONDS
from listing_alerts.core.errors import (
    ConfigurationError,
    PayloadOrAuthError,
    PermanentEndpointError,
    TransportError,
)

logger = logging.getLogger(__name__)

# APNs host is chosen per device: sandbox for dev builds, production for release
APNS_SANDBOX = "https://api.sandbox.push.apple.com"
APNS_PRODUCTION = "https://api.push.apple.com"

JWT_CACHE_SECONDS = 50 * 60
APNS_EXPIRATION_SECONDS = 24 * 60 * 60

RETRIABLE_REASONS = frozenset({"ServiceUnavailable", "InternalServerError", "Shutdown", "TooManyRequests"})
UNREGISTERED_REASON = "Unregistered"
# Provider token problems: drop the cached JWT so the next send signs a fresh one
TOKEN_REASONS = frozenset({"ExpiredProviderToken", "InvalidProviderToken"})

OUTCOME_DELIVERED = "delivered"
OUTCOME_UNREGISTERED = "unregistered"
OUTCOME_RETRIABLE = "retriable"
OUTCOME_REJECTED = "rejected"


def redact_token(device_token: str) -> str:
    """First 16 and last 8 characters, for logs and the attempt table."""
    device_token = device_token or ""
    if len(device_token) <= 24:
        return f"{device_token[:8]}..."
    return f"{device_token[:16]}...{device_token[-8:]}"


def classify_response(status_code: int | None, reason: str | None) -> str:
    if status_code == 200:
        return OUTCOME_DELIVERED
    if status_code == 410 or reason == UNREGISTERED_REASON:
        return OUTCOME_UNREGISTERED
    if not status_code or status_code == 429 or status_code >= 500 or reason in RETRIABLE_REASONS:
        return OUTCOME_RETRIABLE
    return OUTCOME_REJECTED


def load_p8_key(key_base64: str | None = None, key_path: str | None = None) -> str:
    """Load the .p8 signing key from base64 content or a file path. Raises ConfigurationError."""
    key_base64 = settings.apns_key_p8_base64 if key_base64 is None else key_base64
    key_path = settings.apns_key_p8_path if key_path is None else key_path
    if key_base64:
        try:
            return base64.b64decode(key_base64).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigurationError(f"APNS_KEY_P8_BASE64 decode failed: {e}") from e
    if key_path:
        path = Path(key_path)
        if not path.exists():
            raise ConfigurationError(f"APNS_KEY_P8_PATH does not exist: {key_path}")
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"APNS_KEY_P8_PATH read failed: {e}") from e
    raise ConfigurationError("APNs signing key not configured (APNS_KEY_P8_BASE64 or APNS_KEY_P8_PATH)")


class ApnsTokenProvider:
    """Builds and caches the APNs provider JWT. Thread-safe; one instance per process is enough."""

    def __init__(self, key_id: str, team_id: str, private_key: str, clock: Callable[[], float] = time.time):
        if not key_id or not team_id:
            raise ConfigurationError("APNS_KEY_ID and APNS_TEAM_ID are required")
        if not private_key:
            raise ConfigurationError("APNs signing key is empty")
        self.key_id = key_id
        self.team_id = team_id
        self._private_key = private_key
        self._clock = clock
        self._cache: tuple[str, float] | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls) -> "ApnsTokenProvider":
        return cls(settings.apns_key_id, settings.apns_team_id, load_p8_key())

    def token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._cache and self._cache[1] > now:
                return self._cache[0]
            try:
                token = jwt.encode(
                    {"iss": self.team_id, "iat": int(now)},
                    self._private_key,
                    algorithm="ES256",
                    headers={"alg": "ES256", "kid": self.key_id},
                )
            except (ValueError, TypeError, jwt.PyJWTError) as e:
                raise ConfigurationError(f"APNs JWT signing failed: {e}") from e
            self._cache = (token, now + JWT_CACHE_SECONDS)
            return token

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None


@dataclass
class ApnsResponse:
    status_code: int
    apns_id: str | None = None


class ApnsTransport:
    """
    One HTTP/2 client reused for a whole batch. Use as a context manager or call close().
    Pass client= (e.g. httpx.Client(transport=httpx.MockTransport(...))) to stub APNs.
    """

    def __init__(
        self,
        token_provider: ApnsTokenProvider | None = None,
        bundle_id: str | None = None,
        timeout: float = PUSH_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._token_provider = token_provider
        self.bundle_id = bundle_id or settings.apns_bundle_id
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._clock = clock

    def ensure_configured(self) -> None:
        """Raise ConfigurationError now rather than on the first send."""
        if not self.bundle_id:
            raise ConfigurationError("APNS_BUNDLE_ID not set")
        if self._token_provider is None:
            self._token_provider = ApnsTokenProvider.from_settings()
        self._token_provider.token()

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(http2=True, timeout=self.timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "ApnsTransport":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def send(self, device_token: str, payload: dict[str, Any], sandbox: bool) -> ApnsResponse:
        """POST one payload to one device. Returns on 200, raises a PushDeliveryError subclass otherwise."""
        self.ensure_configured()
        base_url = APNS_SANDBOX if sandbox else APNS_PRODUCTION
        url = f"{base_url}/3/device/{device_token}"
        headers = {
            "authorization": f"bearer {self._token_provider.token()}",
            "apns-topic": self.bundle_id,
            "apns-push-type": "alert",
            "apns-priority": "10",
            "apns-expiration": str(int(self._clock()) + APNS_EXPIRATION_SECONDS),
        }
        try:
            resp = self._http().post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"APNs request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"APNs request failed: {e}") from e

        if resp.status_code == 200:
            return ApnsResponse(status_code=200, apns_id=resp.headers.get("apns-id"))

        reason = _parse_reason(resp)
        outcome = classify_response(resp.status_code, reason)
        message = f"APNs returned {resp.status_code}" + (f" ({reason})" if reason else "")
        if reason in TOKEN_REASONS:
            self._token_provider.invalidate()
        if outcome == OUTCOME_UNREGISTERED:
            raise PermanentEndpointError(message, status_code=resp.status_code, reason=reason)
        if outcome == OUTCOME_RETRIABLE:
            raise TransportError(message, status_code=resp.status_code, reason=reason)
        raise PayloadOrAuthError(message, status_code=resp.status_code, reason=reason)


def _parse_reason(resp: httpx.Response) -> str | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        reason = body.get("reason")
        return str(reason) if reason else None
    return None
