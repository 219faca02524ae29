"""
Deliver one APNs payload to one device endpoint and act on the result.

Every attempt is written to push_attempts (token redacted) whatever happens. On top of that:
  delivered    -> endpoint last_used_at refreshed
  unregistered -> every active row with that token deactivated, no retry
  retriable    -> handed to the retry queue (unless this call comes from the retry drain)
  rejected     -> logged with full context for the operator, no retry
ConfigurationError is not caught here: it aborts the caller's batch.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from listing_alerts.core.clock import utcnow
from listing_alerts.core.constants import STATUS_FAILED, STATUS_SENT
from listing_alerts.core.errors import PayloadOrAuthError, PermanentEndpointError, PushDeliveryError, TransportError
from listing_alerts.models.push_attempt import PushAttempt
from listing_alerts.services.push import endpoints as endpoint_registry
from listing_alerts.services.push import retry_queue
from listing_alerts.services.push.apns import ApnsTransport, redact_token
from listing_alerts.services.push.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

SOURCE_IMMEDIATE = "immediate"
SOURCE_DEFERRED = "deferred"
SOURCE_RETRY = "retry"

OUTCOME_SENT = "sent"
OUTCOME_DEACTIVATED = "deactivated"
OUTCOME_QUEUED_RETRY = "queued_retry"
OUTCOME_RETRIABLE = "retriable"
OUTCOME_REJECTED = "rejected"


@dataclass(frozen=True)
class EndpointTarget:
    """What the sender needs to know about one device (from DeviceEndpoint or a retry entry)."""
    endpoint_id: int | None
    device_token: str
    is_sandbox: bool

    @classmethod
    def from_endpoint(cls, endpoint) -> "EndpointTarget":
        return cls(endpoint_id=endpoint.id, device_token=endpoint.device_token, is_sandbox=bool(endpoint.is_sandbox))


def describe_error(error: PushDeliveryError) -> str:
    """One line for last_error columns: message plus the gateway status and reason when known."""
    details = ", ".join(
        f"{name}={value}" for name, value in (("status", error.status_code), ("reason", error.reason)) if value
    )
    return f"{error} ({details})" if details else str(error)


def _record_attempt(
    db: Session,
    *,
    target: EndpointTarget,
    user_id: str,
    notification_type: str,
    delivery_log_id: int | None,
    source: str,
    status: str,
    now: datetime,
    error: PushDeliveryError | None = None,
    status_code: int | None = None,
) -> None:
    db.add(
        PushAttempt(
            delivery_log_id=delivery_log_id,
            user_id=user_id,
            device_token=redact_token(target.device_token),
            notification_type=notification_type,
            status=status,
            apns_status_code=error.status_code if error else status_code,
            apns_reason=error.reason if error else None,
            error_message=str(error) if error else None,
            is_sandbox=target.is_sandbox,
            source=source,
            created_at=now,
        )
    )


def send_to_endpoint(
    db: Session,
    transport: ApnsTransport,
    limiter: SlidingWindowRateLimiter | None,
    *,
    target: EndpointTarget,
    user_id: str,
    notification_type: str,
    apns_payload: dict[str, Any],
    delivery_log_id: int | None = None,
    source: str = SOURCE_IMMEDIATE,
    enqueue_retry: bool = True,
    now: datetime | None = None,
) -> tuple[str, str | None]:
    """Send, record the attempt, apply side effects, commit. Returns (OUTCOME_* value, gateway error or None)."""
    if limiter is not None:
        limiter.acquire()
    now = now or utcnow()
    common = dict(
        target=target,
        user_id=user_id,
        notification_type=notification_type,
        delivery_log_id=delivery_log_id,
        source=source,
        now=now,
    )
    try:
        resp = transport.send(target.device_token, apns_payload, sandbox=target.is_sandbox)
    except PermanentEndpointError as e:
        _record_attempt(db, status=STATUS_FAILED, error=e, **common)
        endpoint_registry.deactivate_token(db, target.device_token, now=now)
        db.commit()
        return OUTCOME_DEACTIVATED, describe_error(e)
    except TransportError as e:
        _record_attempt(db, status=STATUS_FAILED, error=e, **common)
        db.commit()
        logger.warning("APNs transient failure for %s: %s", redact_token(target.device_token), e)
        if not enqueue_retry:
            return OUTCOME_RETRIABLE, describe_error(e)
        retry_queue.enqueue(
            db,
            user_id=user_id,
            endpoint_id=target.endpoint_id,
            device_token=target.device_token,
            payload=apns_payload,
            notification_type=notification_type,
            delivery_log_id=delivery_log_id,
            is_sandbox=target.is_sandbox,
            error=describe_error(e),
            now=now,
        )
        return OUTCOME_QUEUED_RETRY, describe_error(e)
    except PayloadOrAuthError as e:
        _record_attempt(db, status=STATUS_FAILED, error=e, **common)
        db.commit()
        logger.error(
            "APNs rejected %s push for user %s token %s (status=%s reason=%s sandbox=%s source=%s): %s",
            notification_type,
            user_id,
            redact_token(target.device_token),
            e.status_code,
            e.reason,
            target.is_sandbox,
            source,
            apns_payload.get("aps", {}).get("alert"),
        )
        return OUTCOME_REJECTED, describe_error(e)

    _record_attempt(db, status=STATUS_SENT, status_code=resp.status_code, **common)
    if target.endpoint_id is not None:
        endpoint_registry.touch(db, target.endpoint_id, now=now)
    db.commit()
    return OUTCOME_SENT, None


def deliver_to_endpoint(db: Session, transport: ApnsTransport, limiter: SlidingWindowRateLimiter | None, **kwargs) -> str:
    """send_to_endpoint without the error detail. Returns one of the OUTCOME_* values."""
    outcome, _ = send_to_endpoint(db, transport, limiter, **kwargs)
    return outcome
