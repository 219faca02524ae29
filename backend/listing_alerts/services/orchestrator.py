"""
Turn listing changes into per-user notifications.

For each change event: find who cares (saved-search matches for new listings, favorite owners
for price / status / open-house changes), build the typed payload, and run it through notify_user:

  gate (preferences) -> disabled: logged as skipped | quiet hours: deferred until the window ends
  dedup (24h)        -> already sent: stop
  devices            -> none active: logged as skipped
  claim signature    -> lost the race: stop
  send to every active device, then badge (store error before any device got it: claim released)
  outcome            -> sent if any device accepted, queued_retry if any send is being retried, else failed

Email runs on its own track (own preference switch, never deferred). Network I/O only happens
after the claim is committed.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from listing_alerts.core.clock import utcnow
from listing_alerts.core.constants import (
    CHANGE_EVENT_MAX_ATTEMPTS,
    CHANGE_EVENTS_BATCH_LIMIT,
    CHANNEL_EMAIL,
    CHANNEL_PUSH,
    DEFERRED_BATCH_LIMIT,
    KIND_NEW_LISTING,
    KIND_OPEN_HOUSE,
    KIND_PRICE_CHANGE,
    KIND_STATUS_CHANGE,
    STATUS_FAILED,
    STATUS_SENT,
    STATUS_SKIPPED,
)
from listing_alerts.core.errors import ConfigurationError, StoreError
from listing_alerts.models.favorite import Favorite
from listing_alerts.models.listing_change_event import ListingChangeEvent
from listing_alerts.models.saved_search import SavedSearch
from listing_alerts.services import dedup, deferred_queue, email_notify, preferences
from listing_alerts.services.badges import get_badge_count, increment_badge
from listing_alerts.services.matching.criteria import ListingSnapshot
from listing_alerts.services.matching.matcher import MatchResult, SmartMatcher
from listing_alerts.services.preferences import GateReason
from listing_alerts.services.push import endpoints as endpoint_registry
from listing_alerts.services.push.delivery import (
    OUTCOME_QUEUED_RETRY,
    OUTCOME_SENT,
    SOURCE_DEFERRED,
    SOURCE_IMMEDIATE,
    EndpointTarget,
    deliver_to_endpoint,
)
from listing_alerts.services.push.payloads import (
    NewListingPayload,
    NotificationPayload,
    OpenHousePayload,
    PriceChangePayload,
    StatusChangePayload,
    TourRequestedPayload,
    build_apns_payload,
    dump_payload,
    parse_payload,
)

logger = logging.getLogger(__name__)

# notify_user results per channel
RESULT_SENT = "sent"
RESULT_FAILED = "failed"
RESULT_SKIPPED = "skipped"
RESULT_DEDUPED = "deduped"
RESULT_DEFERRED = "deferred"
RESULT_QUEUED_RETRY = "queued_retry"

REASON_PUSH_DISABLED = "Push disabled by user"
REASON_EMAIL_DISABLED = "Email disabled by user"
REASON_NO_DEVICES = "No active devices"
REASON_QUEUED_RETRY = "Transient failure, queued for retry"
REASON_ALL_DEVICES_FAILED = "All devices failed"
REASON_DUPLICATE = "duplicate"


@dataclass
class Candidate:
    user_id: str
    search: SavedSearch | None = None
    match: MatchResult | None = None


@dataclass
class NotifyOutcome:
    user_id: str
    kind: str
    push: str
    email: str | None = None
    delivery_log_id: int | None = None
    detail: str | None = None


@dataclass
class EventResult:
    event_id: int
    outcomes: list[NotifyOutcome] = field(default_factory=list)

    def count(self, result: str) -> int:
        return sum(1 for o in self.outcomes if o.push == result)


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(str(value).replace("$", "").replace(",", "").strip())
    except ValueError:
        return None


def _listing_id(payload: NotificationPayload) -> str | None:
    return getattr(payload, "listing_id", None)


def _cross_run_key(payload: NotificationPayload) -> str | None:
    """Listing id for the 24h already-sent check; alerts not tied to one listing rely on the signature alone."""
    if isinstance(payload, TourRequestedPayload):
        return None
    return payload.listing_id


def snapshot_for(event: ListingChangeEvent) -> ListingSnapshot:
    """Listing snapshot stored on the event. Raises ValidationError (a ValueError) on bad data."""
    data = dict(event.listing_snapshot or {})
    data["listing_id"] = event.listing_id
    return ListingSnapshot.model_validate(data)


def find_candidates(
    db: Session,
    event: ListingChangeEvent,
    snapshot: ListingSnapshot,
    now: datetime | None = None,
    matcher: SmartMatcher | None = None,
) -> list[Candidate]:
    """Users to notify about this change, one entry per user."""
    if event.change_kind == KIND_NEW_LISTING:
        matcher = matcher or SmartMatcher()
        best: dict[str, Candidate] = {}
        # Matches come best score first, so the first search seen per user wins
        for m in matcher.find_matching_searches(db, snapshot, now=now):
            if m.search.user_id not in best:
                best[m.search.user_id] = Candidate(user_id=m.search.user_id, search=m.search, match=m.result)
        return list(best.values())

    rows = (
        db.query(Favorite.user_id)
        .filter(Favorite.listing_id == event.listing_id)
        .order_by(Favorite.created_at.asc(), Favorite.id.asc())
        .all()
    )
    return [Candidate(user_id=r.user_id) for r in rows]


def build_payload(
    event: ListingChangeEvent,
    snapshot: ListingSnapshot,
    candidate: Candidate | None = None,
) -> NotificationPayload:
    """Typed payload for one recipient. Raises ValueError when the event lacks what its kind needs."""
    common: dict[str, Any] = {
        "listing_id": snapshot.listing_id,
        "listing_key": snapshot.listing_key,
        "address": snapshot.address,
        "city": snapshot.city,
        "price": snapshot.list_price,
        "image_url": snapshot.photo_url,
    }
    if candidate is not None and candidate.search is not None:
        common["saved_search_id"] = candidate.search.id
        common["saved_search_name"] = candidate.search.name or None

    kind = event.change_kind
    if kind == KIND_NEW_LISTING:
        match = candidate.match if candidate is not None else None
        return NewListingPayload(
            **common,
            bedrooms=snapshot.bedrooms_total,
            bathrooms=snapshot.bathrooms_total,
            match_score=match.score if match else None,
            match_reasons=match.reasons if match else [],
        )
    if kind == KIND_PRICE_CHANGE:
        previous = _to_float(event.previous_value)
        current = _to_float(event.current_value)
        if current is None:
            current = snapshot.list_price
        if previous is None or current is None:
            raise ValueError(f"Price change event {event.id} lacks previous or current price")
        common["price"] = current
        return PriceChangePayload(**common, previous_price=previous, current_price=current)
    if kind == KIND_STATUS_CHANGE:
        new_status = event.current_value or snapshot.status
        if not new_status:
            raise ValueError(f"Status change event {event.id} lacks the new status")
        return StatusChangePayload(**common, previous_status=event.previous_value, new_status=new_status)
    if kind == KIND_OPEN_HOUSE:
        details = event.details or {}
        starts_at = details.get("starts_at") or event.current_value
        if not starts_at:
            raise ValueError(f"Open house event {event.id} lacks a start time")
        return OpenHousePayload(**common, starts_at=starts_at, ends_at=details.get("ends_at"))
    raise ValueError(f"Unsupported change kind {kind!r}")


# --- Delivery to one user ---


def _notify_push(
    db: Session,
    user_id: str,
    payload: NotificationPayload,
    transport,
    limiter,
    now: datetime,
    source: str,
    bypass_quiet_hours: bool,
) -> tuple[str, int | None, str | None]:
    kind = payload.kind
    listing_id = _listing_id(payload)
    title = payload.title()

    decision = preferences.should_send_now(db, user_id, kind, CHANNEL_PUSH, now=now)
    if decision.reason == GateReason.DISABLED:
        row = dedup.record_skipped(db, user_id, listing_id, kind, title=title, reason=REASON_PUSH_DISABLED, now=now)
        return RESULT_SKIPPED, row.id, REASON_PUSH_DISABLED
    if decision.reason == GateReason.QUIET_HOURS and not bypass_quiet_hours:
        prefs = preferences.get_preferences(db, user_id)
        deliver_after = preferences.quiet_hours_end(prefs, now)
        row = deferred_queue.enqueue(db, user_id, payload, deliver_after, now=now)
        if row is None:
            return RESULT_DEDUPED, None, "already deferred"
        return RESULT_DEFERRED, None, f"deliver after {deliver_after.isoformat()}"

    cross_run_key = _cross_run_key(payload)
    if cross_run_key is not None and dedup.was_sent(db, user_id, cross_run_key, kind, now=now):
        return RESULT_DEDUPED, None, "sent within dedup window"

    targets = [EndpointTarget.from_endpoint(e) for e in endpoint_registry.active_endpoints(db, user_id)]
    if not targets:
        row = dedup.record_skipped(db, user_id, listing_id, kind, title=title, reason=REASON_NO_DEVICES, now=now)
        return RESULT_SKIPPED, row.id, REASON_NO_DEVICES

    entry = dedup.record_sent(
        db,
        user_id,
        listing_id,
        kind,
        title=title,
        body=payload.body(),
        payload=dump_payload(payload),
        subject=payload.subject(),
        now=now,
    )
    if entry is None:
        return RESULT_DEDUPED, None, "signature already claimed"
    entry_id = entry.id

    apns_payload = build_apns_payload(payload, get_badge_count(db, user_id) + 1)
    outcomes: list[str] = []
    try:
        for target in targets:
            outcomes.append(
                deliver_to_endpoint(
                    db,
                    transport,
                    limiter,
                    target=target,
                    user_id=user_id,
                    notification_type=kind,
                    apns_payload=apns_payload,
                    delivery_log_id=entry_id,
                    source=source,
                    now=now,
                )
            )
    except (SQLAlchemyError, StoreError):
        db.rollback()
        if OUTCOME_SENT not in outcomes and OUTCOME_QUEUED_RETRY not in outcomes:
            # Nothing reached a device: give the signature back so the event rerun can claim it
            dedup.release_claim(db, entry_id)
        elif OUTCOME_SENT not in outcomes:
            dedup.mark_failed(db, entry_id, REASON_QUEUED_RETRY)
        raise
    if OUTCOME_SENT in outcomes or OUTCOME_QUEUED_RETRY in outcomes:
        increment_badge(db, user_id, now=now)
    if OUTCOME_SENT in outcomes:
        return RESULT_SENT, entry_id, None
    if OUTCOME_QUEUED_RETRY in outcomes:
        dedup.mark_failed(db, entry_id, REASON_QUEUED_RETRY)
        return RESULT_QUEUED_RETRY, entry_id, REASON_QUEUED_RETRY
    detail = f"{REASON_ALL_DEVICES_FAILED}: {', '.join(sorted(set(outcomes)))}"
    dedup.mark_failed(db, entry_id, detail)
    return RESULT_FAILED, entry_id, detail


def _email_address(db: Session, user_id: str) -> str | None:
    row = (
        db.query(SavedSearch.owner_email)
        .filter(SavedSearch.user_id == user_id, SavedSearch.owner_email.isnot(None), SavedSearch.owner_email != "")
        .order_by(SavedSearch.updated_at.desc(), SavedSearch.id.desc())
        .first()
    )
    return row.owner_email if row else None


def _notify_email(db: Session, user_id: str, payload: NotificationPayload, now: datetime) -> str | None:
    """Email track. None when email is not in play for this user (SMTP off, no address)."""
    if not email_notify.smtp_configured():
        return None
    address = _email_address(db, user_id)
    if not address:
        return None
    kind = payload.kind
    listing_id = _listing_id(payload)
    title = payload.title()
    if not preferences.should_send_now(db, user_id, kind, CHANNEL_EMAIL, now=now).send:
        dedup.record_skipped(
            db, user_id, listing_id, kind, title=title, reason=REASON_EMAIL_DISABLED, channel=CHANNEL_EMAIL, now=now
        )
        return RESULT_SKIPPED
    cross_run_key = _cross_run_key(payload)
    if cross_run_key is not None and dedup.was_sent(db, user_id, cross_run_key, kind, channel=CHANNEL_EMAIL, now=now):
        return RESULT_DEDUPED
    entry = dedup.record_sent(
        db,
        user_id,
        listing_id,
        kind,
        title=title,
        body=payload.body(),
        payload=dump_payload(payload),
        subject=payload.subject(),
        channel=CHANNEL_EMAIL,
        now=now,
    )
    if entry is None:
        return RESULT_DEDUPED
    entry_id = entry.id
    if not email_notify.send_listing_alert_email(address, title, payload.body()):
        dedup.mark_failed(db, entry_id, "SMTP send failed")
        return RESULT_FAILED
    return RESULT_SENT


def notify_user(
    db: Session,
    user_id: str,
    payload: NotificationPayload,
    transport,
    limiter=None,
    now: datetime | None = None,
    source: str = SOURCE_IMMEDIATE,
    bypass_quiet_hours: bool = False,
    send_email: bool = True,
) -> NotifyOutcome:
    """Deliver one payload to one user on push and (independently) email."""
    now = now or utcnow()
    push, entry_id, detail = _notify_push(db, user_id, payload, transport, limiter, now, source, bypass_quiet_hours)
    email = _notify_email(db, user_id, payload, now) if send_email else None
    logger.debug("Notify %s %s: push=%s email=%s %s", payload.kind, user_id, push, email, detail or "")
    return NotifyOutcome(
        user_id=user_id, kind=payload.kind, push=push, email=email, delivery_log_id=entry_id, detail=detail
    )


# --- Change events ---


def process_change_event(
    db: Session,
    event: ListingChangeEvent,
    transport,
    limiter=None,
    now: datetime | None = None,
    matcher: SmartMatcher | None = None,
) -> EventResult:
    """Notify every interested user about one change. Raises ValueError for malformed events."""
    now = now or utcnow()
    snapshot = snapshot_for(event)
    result = EventResult(event_id=event.id)
    for candidate in find_candidates(db, event, snapshot, now=now, matcher=matcher):
        payload = build_payload(event, snapshot, candidate)
        result.outcomes.append(notify_user(db, candidate.user_id, payload, transport, limiter, now=now))
    return result


def _finish_event(db: Session, event_id: int, now: datetime, error: str | None = None) -> None:
    event = db.get(ListingChangeEvent, event_id)
    if event is None:
        return
    event.processed_at = now
    if error:
        event.last_error = error[:2000]
    db.commit()


def _record_event_failure(db: Session, event_id: int, error: str, now: datetime) -> None:
    """Count a failed attempt; give up on the event after CHANGE_EVENT_MAX_ATTEMPTS."""
    event = db.get(ListingChangeEvent, event_id)
    if event is None:
        return
    event.attempts = (event.attempts or 0) + 1
    event.last_error = error[:2000]
    if event.attempts >= CHANGE_EVENT_MAX_ATTEMPTS:
        event.processed_at = now
        logger.error("Change event %s abandoned after %s attempts: %s", event_id, event.attempts, error)
    db.commit()


def process_pending_events(
    db: Session,
    transport,
    limiter=None,
    now: datetime | None = None,
    limit: int = CHANGE_EVENTS_BATCH_LIMIT,
) -> dict[str, int]:
    """
    Drain unprocessed change events, oldest first. ConfigurationError (no APNs credentials) aborts the
    whole batch before anything is sent; a store error abandons only the current event.
    """
    now = now or utcnow()
    counts = {"events": 0, "sent": 0, "deferred": 0, "queued_retry": 0, "failed": 0, "invalid": 0, "errors": 0}
    events = (
        db.query(ListingChangeEvent)
        .filter(ListingChangeEvent.processed_at.is_(None))
        .order_by(ListingChangeEvent.occurred_at.asc(), ListingChangeEvent.id.asc())
        .limit(limit)
        .all()
    )
    if not events:
        return counts
    transport.ensure_configured()

    for event in events:
        event_id = event.id
        try:
            result = process_change_event(db, event, transport, limiter, now=now)
        except ValueError as e:
            # Malformed snapshot or payload: retrying will not help
            db.rollback()
            logger.warning("Change event %s is invalid, skipping: %s", event_id, e)
            _finish_event(db, event_id, now, error=str(e))
            counts["invalid"] += 1
            continue
        except (SQLAlchemyError, StoreError) as e:
            db.rollback()
            logger.exception("Change event %s failed: %s", event_id, e)
            try:
                _record_event_failure(db, event_id, str(e), now)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Change event %s: could not record failure", event_id)
            counts["errors"] += 1
            continue
        _finish_event(db, event_id, now)
        counts["events"] += 1
        counts["sent"] += result.count(RESULT_SENT)
        counts["deferred"] += result.count(RESULT_DEFERRED)
        counts["queued_retry"] += result.count(RESULT_QUEUED_RETRY)
        counts["failed"] += result.count(RESULT_FAILED)
    logger.info("Change events: %s", counts)
    return counts


# --- Deferred drain ---

_DEFERRED_STATUS_FOR = {
    RESULT_SENT: (STATUS_SENT, None),
    RESULT_QUEUED_RETRY: (STATUS_FAILED, REASON_QUEUED_RETRY),
    RESULT_FAILED: (STATUS_FAILED, REASON_ALL_DEVICES_FAILED),
    RESULT_DEDUPED: (STATUS_SKIPPED, REASON_DUPLICATE),
}


def process_deferred(
    db: Session,
    transport,
    limiter=None,
    now: datetime | None = None,
    limit: int = DEFERRED_BATCH_LIMIT,
) -> dict[str, int]:
    """
    Deliver quiet-hours pushes that are now due. Preferences are read again at send time: push turned
    off -> skipped; still (or newly) inside quiet hours -> back to pending with a new deliver_after.
    """
    now = now or utcnow()
    counts = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0, "rescheduled": 0}
    rows = deferred_queue.due(db, now=now, limit=limit)
    if not rows:
        return counts
    transport.ensure_configured()

    for row in rows:
        row_id, user_id, raw = row.id, row.user_id, row.payload
        if not deferred_queue.claim(db, row_id, now=now):
            continue
        counts["processed"] += 1
        try:
            payload = parse_payload(raw or {})
        except ValidationError as e:
            deferred_queue.finish(db, row_id, STATUS_FAILED, f"Invalid payload: {e}"[:2000])
            counts["failed"] += 1
            continue

        try:
            if not preferences.is_push_enabled(db, user_id, payload.kind):
                deferred_queue.finish(db, row_id, STATUS_SKIPPED, REASON_PUSH_DISABLED)
                counts["skipped"] += 1
                continue
            prefs = preferences.get_preferences(db, user_id)
            if preferences.in_quiet_window(prefs, now):
                deferred_queue.release(db, row_id, preferences.quiet_hours_end(prefs, now))
                counts["rescheduled"] += 1
                continue
            outcome = notify_user(
                db,
                user_id,
                payload,
                transport,
                limiter,
                now=now,
                source=SOURCE_DEFERRED,
                bypass_quiet_hours=True,
                send_email=False,
            )
        except (SQLAlchemyError, StoreError) as e:
            db.rollback()
            logger.exception("Deferred %s failed, releasing: %s", row_id, e)
            try:
                deferred_queue.release(db, row_id, now)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Deferred %s: could not release", row_id)
            continue

        status, message = _DEFERRED_STATUS_FOR.get(outcome.push, (STATUS_SKIPPED, outcome.detail))
        if outcome.push == RESULT_FAILED:
            message = outcome.detail
        deferred_queue.finish(db, row_id, status, message)
        counts[status] += 1
    logger.info("Deferred drain: %s", counts)
    return counts


# --- Tour requests ---


def notify_tour_requested(
    db: Session,
    agent_user_id: str,
    appointment_id: str,
    transport,
    limiter=None,
    *,
    client_id: str | None = None,
    client_name: str | None = None,
    listing_id: str | None = None,
    listing_key: str | None = None,
    address: str = "",
    requested_for: datetime | None = None,
    image_url: str | None = None,
    now: datetime | None = None,
) -> NotifyOutcome | None:
    """Tell an agent that a client booked a tour. Fire-and-forget: failures are logged, never raised."""
    payload = TourRequestedPayload(
        appointment_id=appointment_id,
        client_id=client_id,
        client_name=client_name or "A client",
        listing_id=listing_id,
        listing_key=listing_key,
        address=address,
        requested_for=requested_for,
        image_url=image_url,
    )
    try:
        transport.ensure_configured()
        return notify_user(db, agent_user_id, payload, transport, limiter, now=now)
    except ConfigurationError as e:
        logger.warning("Tour request %s not pushed: %s", appointment_id, e)
    except (SQLAlchemyError, StoreError) as e:
        db.rollback()
        logger.exception("Tour request %s notification failed: %s", appointment_id, e)
    return None
