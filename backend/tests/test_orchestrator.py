from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, BrokenRateWindow, FakeTransport, boston_listing
from listing_alerts.core.errors import ConfigurationError, PayloadOrAuthError, PermanentEndpointError, TransportError
from listing_alerts.models.deferred_notification import DeferredNotification
from listing_alerts.models.delivery_log import DeliveryLogEntry
from listing_alerts.models.device_endpoint import DeviceEndpoint
from listing_alerts.models.listing_change_event import ListingChangeEvent
from listing_alerts.models.push_attempt import PushAttempt
from listing_alerts.models.retry_queue_entry import RetryQueueEntry
from listing_alerts.services import email_notify, orchestrator
from listing_alerts.services.badges import get_badge_count
from listing_alerts.services.preferences import update_preferences
from listing_alerts.services.push.payloads import NewListingPayload

BOSTON_SEARCH = {"min_price": 500000, "max_price": 800000, "city": "Boston"}
TOKEN = "ab" * 32
OTHER_TOKEN = "cd" * 32
LISTING_ID = "73000001"

# 16:00 UTC is noon in Boston, the end of the 10:00-12:00 quiet window used below
NOON_BOSTON = datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)


@pytest.fixture
def interested_user(add_search, add_device):
    add_search("u1", BOSTON_SEARCH)
    add_device("u1", TOKEN)


@pytest.fixture
def emails(monkeypatch):
    sent = []

    def fake_send(to_email, title, body, deep_link=None):
        sent.append({"to": to_email, "title": title, "body": body})
        return True

    monkeypatch.setattr(email_notify, "smtp_configured", lambda: True)
    monkeypatch.setattr(email_notify, "send_listing_alert_email", fake_send)
    return sent


def quiet_from_ten_to(db, user_id, end="12:00"):
    update_preferences(
        db,
        user_id,
        {"quiet_hours_enabled": True, "quiet_hours_start": "10:00", "quiet_hours_end": end},
    )


def log_rows(db, **filters):
    return db.query(DeliveryLogEntry).filter_by(**filters).order_by(DeliveryLogEntry.id).all()


def test_new_listing_notifies_matching_user(db, transport, interested_user, add_event):
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    counts = orchestrator.process_pending_events(db, transport, now=NOW)

    assert counts["events"] == 1
    assert counts["sent"] == 1
    [push] = transport.sent
    assert push["token"] == TOKEN
    assert push["sandbox"] is False
    assert push["payload"]["aps"]["alert"] == {
        "title": "New Listing",
        "body": '12 Marlborough St, Boston - $600,000\nMatches "Back Bay condos"',
    }
    assert push["payload"]["aps"]["badge"] == 1
    assert push["payload"]["listing_id"] == LISTING_ID
    assert get_badge_count(db, "u1") == 1
    [row] = log_rows(db)
    assert row.status == "sent"
    assert row.dedup_signature == f"u1|new_listing|{LISTING_ID}|2026-03-10T15"
    db.refresh(event)
    assert event.processed_at is not None


def test_repeat_event_within_a_day_is_deduped(db, transport, interested_user, add_event):
    add_event(LISTING_ID, "new_listing", snapshot=boston_listing())
    orchestrator.process_pending_events(db, transport, now=NOW)
    add_event(LISTING_ID, "new_listing", snapshot=boston_listing(), occurred_at=NOW + timedelta(hours=2))

    counts = orchestrator.process_pending_events(db, transport, now=NOW + timedelta(hours=2))

    assert counts["events"] == 1
    assert counts["sent"] == 0
    assert len(transport.sent) == 1
    assert get_badge_count(db, "u1") == 1


def test_daily_search_is_not_pushed_per_listing(db, transport, add_search, add_device, add_event):
    add_search("u1", BOSTON_SEARCH, frequency="daily")
    add_device("u1", TOKEN)
    add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    counts = orchestrator.process_pending_events(db, transport, now=NOW)

    assert counts["events"] == 1
    assert counts["sent"] == 0
    assert transport.sent == []
    assert log_rows(db) == []


def test_one_notification_per_user_using_best_search(db, transport, add_search, add_device, add_event):
    add_search("u1", BOSTON_SEARCH, name="Anything in Boston")
    best = add_search("u1", {**BOSTON_SEARCH, "min_bedrooms": 2}, name="Two bed Boston")
    add_device("u1", TOKEN)
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    result = orchestrator.process_change_event(db, event, transport, now=NOW)

    assert [o.push for o in result.outcomes] == ["sent"]
    [push] = transport.sent
    assert push["payload"]["saved_search_id"] == best.id
    assert push["payload"]["aps"]["alert"]["body"].endswith('Matches "Two bed Boston"')


def test_no_devices_is_logged_as_skipped(db, transport, add_search, add_event):
    add_search("u1", BOSTON_SEARCH)
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    result = orchestrator.process_change_event(db, event, transport, now=NOW)

    assert result.outcomes[0].push == "skipped"
    [row] = log_rows(db)
    assert row.status == "skipped"
    assert row.reason == "No active devices"
    assert row.dedup_signature is None
    assert transport.sent == []


def test_disabled_push_is_logged_as_skipped(db, transport, interested_user, add_event):
    update_preferences(db, "u1", {"new_listing_push": False})
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    result = orchestrator.process_change_event(db, event, transport, now=NOW)

    assert result.outcomes[0].push == "skipped"
    assert result.outcomes[0].detail == "Push disabled by user"
    assert transport.sent == []
    assert get_badge_count(db, "u1") == 0


def test_quiet_hours_defer_until_window_ends(db, transport, interested_user, add_event):
    quiet_from_ten_to(db, "u1")
    add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    counts = orchestrator.process_pending_events(db, transport, now=NOW)

    assert counts["deferred"] == 1
    assert transport.sent == []
    row = db.query(DeferredNotification).one()
    assert row.deliver_after.replace(tzinfo=None) == NOON_BOSTON.replace(tzinfo=None)
    assert row.payload["kind"] == "new_listing"

    assert orchestrator.process_deferred(db, transport, now=NOW + timedelta(minutes=30))["processed"] == 0

    counts = orchestrator.process_deferred(db, transport, now=NOON_BOSTON)

    assert counts == {"processed": 1, "sent": 1, "failed": 0, "skipped": 0, "rescheduled": 0}
    db.refresh(row)
    assert row.status == "sent"
    assert transport.sent[0]["payload"]["aps"]["alert"]["title"] == "New Listing"
    assert db.query(PushAttempt).one().source == "deferred"


def test_quiet_hours_same_alert_is_deferred_once(db, transport, interested_user):
    quiet_from_ten_to(db, "u1")
    payload = NewListingPayload(listing_id=LISTING_ID, address="12 Marlborough St", city="Boston")

    first = orchestrator.notify_user(db, "u1", payload, transport, now=NOW)
    second = orchestrator.notify_user(db, "u1", payload, transport, now=NOW + timedelta(minutes=5))

    assert first.push == "deferred"
    assert second.push == "deduped"
    assert db.query(DeferredNotification).count() == 1


def test_deferred_rechecks_push_switch(db, transport, interested_user, add_event):
    quiet_from_ten_to(db, "u1")
    add_event(LISTING_ID, "new_listing", snapshot=boston_listing())
    orchestrator.process_pending_events(db, transport, now=NOW)
    update_preferences(db, "u1", {"new_listing_push": False})

    counts = orchestrator.process_deferred(db, transport, now=NOON_BOSTON)

    assert counts["skipped"] == 1
    row = db.query(DeferredNotification).one()
    assert row.status == "skipped"
    assert row.error_message == "Push disabled by user"
    assert transport.sent == []


def test_deferred_still_quiet_is_rescheduled(db, transport, interested_user, add_event):
    quiet_from_ten_to(db, "u1")
    add_event(LISTING_ID, "new_listing", snapshot=boston_listing())
    orchestrator.process_pending_events(db, transport, now=NOW)
    # User stretched the window by an hour while the push was waiting
    quiet_from_ten_to(db, "u1", end="13:00")

    counts = orchestrator.process_deferred(db, transport, now=NOON_BOSTON)

    assert counts["rescheduled"] == 1
    row = db.query(DeferredNotification).one()
    db.refresh(row)
    assert row.status == "pending"
    assert row.processed_at is None
    assert row.deliver_after.replace(tzinfo=None) == datetime(2026, 3, 10, 17, 0)
    assert transport.sent == []


def test_deferred_with_unreadable_payload_fails(db, transport):
    db.add(
        DeferredNotification(
            user_id="u1",
            notification_type="new_listing",
            payload={"kind": "weather"},
            deliver_after=NOW,
            created_at=NOW,
        )
    )
    db.commit()

    counts = orchestrator.process_deferred(db, transport, now=NOW)

    assert counts["failed"] == 1
    row = db.query(DeferredNotification).one()
    assert row.status == "failed"
    assert row.error_message.startswith("Invalid payload")


def test_price_drop_goes_to_favorite_owners(db, transport, add_favorite, add_device, add_event):
    add_favorite("u1", LISTING_ID)
    add_favorite("u2", LISTING_ID)
    add_favorite("u3", "other-listing")
    add_device("u1", TOKEN)
    add_device("u2", OTHER_TOKEN)
    add_event(
        LISTING_ID,
        "price_change",
        snapshot=boston_listing(list_price=575000),
        previous_value="600000",
        current_value="575000",
    )

    counts = orchestrator.process_pending_events(db, transport, now=NOW)

    assert counts["sent"] == 2
    assert [p["token"] for p in transport.sent] == [TOKEN, OTHER_TOKEN]
    alert = transport.sent[0]["payload"]["aps"]["alert"]
    assert alert == {"title": "Price Reduced!", "body": "12 Marlborough St, Boston - Now $575,000 (-$25,000)"}
    assert transport.sent[0]["payload"]["price_previous"] == 600000


def test_status_and_open_house_events(db, transport, add_favorite, add_device, add_event):
    add_favorite("u1", LISTING_ID)
    add_device("u1", TOKEN)
    add_event(LISTING_ID, "status_change", snapshot=boston_listing(), previous_value="Active", current_value="Pending")
    add_event(
        LISTING_ID,
        "open_house",
        snapshot=boston_listing(),
        details={"starts_at": "2026-03-14T13:00:00", "ends_at": "2026-03-14T15:00:00"},
        occurred_at=NOW + timedelta(seconds=1),
    )

    counts = orchestrator.process_pending_events(db, transport, now=NOW)

    assert counts["sent"] == 2
    titles = [p["payload"]["aps"]["alert"]["title"] for p in transport.sent]
    assert titles == ["Status: Pending", "Open House Alert"]
    assert transport.sent[1]["payload"]["open_house_date"] == "Sat, Mar 14"


def test_transient_failure_is_queued_for_retry(db, interested_user, add_event):
    transport = FakeTransport(failures={TOKEN: TransportError("APNs returned 503", status_code=503)})
    add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    counts = orchestrator.process_pending_events(db, transport, now=NOW)

    assert counts["queued_retry"] == 1
    [row] = log_rows(db)
    assert row.status == "failed"
    assert row.reason == "Transient failure, queued for retry"
    entry = db.query(RetryQueueEntry).one()
    assert entry.delivery_log_id == row.id
    assert entry.payload["aps"]["badge"] == 1


def test_store_error_before_any_send_leaves_event_retryable(db, transport, interested_user, add_event):
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    first = orchestrator.process_pending_events(db, transport, BrokenRateWindow(failures=1), now=NOW)

    assert first["errors"] == 1
    assert transport.sent == []
    assert log_rows(db) == []
    assert get_badge_count(db, "u1") == 0
    db.refresh(event)
    assert event.processed_at is None
    assert event.attempts == 1

    second = orchestrator.process_pending_events(db, transport, BrokenRateWindow(failures=0), now=NOW)

    assert second["sent"] == 1
    assert len(transport.sent) == 1
    [row] = log_rows(db)
    assert row.status == "sent"
    assert get_badge_count(db, "u1") == 1


def test_one_good_device_is_enough(db, add_search, add_device, add_event):
    add_search("u1", BOSTON_SEARCH)
    add_device("u1", TOKEN, last_used_at=NOW - timedelta(days=1))
    add_device("u1", OTHER_TOKEN)
    transport = FakeTransport(failures={TOKEN: PermanentEndpointError("APNs returned 410", status_code=410)})
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    result = orchestrator.process_change_event(db, event, transport, now=NOW)

    assert result.outcomes[0].push == "sent"
    assert len(transport.sent) == 2
    dead = db.query(DeviceEndpoint).filter(DeviceEndpoint.device_token == TOKEN).one()
    assert dead.is_active is False
    assert log_rows(db)[0].status == "sent"


def test_all_devices_rejected_marks_log_failed(db, interested_user, add_event):
    transport = FakeTransport(failures={TOKEN: PayloadOrAuthError("APNs returned 400", status_code=400)})
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    result = orchestrator.process_change_event(db, event, transport, now=NOW)

    assert result.outcomes[0].push == "failed"
    [row] = log_rows(db)
    assert row.status == "failed"
    assert row.reason == "All devices failed: rejected"
    assert db.query(RetryQueueEntry).count() == 0


def test_missing_credentials_abort_batch_before_sending(db, interested_user, add_event):
    transport = FakeTransport(configured=False)
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    with pytest.raises(ConfigurationError):
        orchestrator.process_pending_events(db, transport, now=NOW)

    assert transport.sent == []
    db.refresh(event)
    assert event.processed_at is None
    assert log_rows(db) == []


def test_no_pending_events_skips_credential_check(db):
    counts = orchestrator.process_pending_events(db, FakeTransport(configured=False), now=NOW)
    assert counts["events"] == 0


def test_malformed_event_is_closed_with_error(db, transport, add_favorite, add_device, add_event):
    add_favorite("u1", LISTING_ID)
    add_device("u1", TOKEN)
    bad = add_event(LISTING_ID, "price_change", snapshot=boston_listing(), previous_value=None, current_value="n/a")
    bad_snapshot = add_event(LISTING_ID, "status_change", snapshot={"list_price": "lots"}, current_value="Sold")

    counts = orchestrator.process_pending_events(db, transport, now=NOW)

    assert counts["invalid"] == 2
    for event in (bad, bad_snapshot):
        db.refresh(event)
        assert event.processed_at is not None
        assert event.last_error
    assert transport.sent == []


def test_events_processed_oldest_first(db, transport, add_favorite, add_device, add_event):
    add_favorite("u1", LISTING_ID)
    add_favorite("u1", "73000002")
    add_device("u1", TOKEN)
    add_event(LISTING_ID, "status_change", snapshot=boston_listing(), current_value="Sold", occurred_at=NOW)
    add_event(
        "73000002",
        "status_change",
        snapshot=boston_listing(),
        current_value="Pending",
        occurred_at=NOW - timedelta(minutes=5),
    )

    orchestrator.process_pending_events(db, transport, now=NOW)

    assert [p["payload"]["listing_id"] for p in transport.sent] == ["73000002", LISTING_ID]
    assert [p["payload"]["new_status"] for p in transport.sent] == ["Pending", "Sold"]
    assert db.query(ListingChangeEvent).filter(ListingChangeEvent.processed_at.is_(None)).count() == 0


def test_email_goes_out_alongside_push(db, transport, emails, add_search, add_device, add_event):
    add_search("u1", BOSTON_SEARCH, owner_email="buyer@example.com")
    add_device("u1", TOKEN)
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    result = orchestrator.process_change_event(db, event, transport, now=NOW)

    assert result.outcomes[0].push == "sent"
    assert result.outcomes[0].email == "sent"
    assert emails == [
        {
            "to": "buyer@example.com",
            "title": "New Listing",
            "body": '12 Marlborough St, Boston - $600,000\nMatches "Back Bay condos"',
        }
    ]
    assert [r.channel for r in log_rows(db, status="sent")] == ["push", "email"]


def test_email_is_not_deferred_by_quiet_hours(db, transport, emails, add_search, add_device, add_event):
    add_search("u1", BOSTON_SEARCH, owner_email="buyer@example.com")
    add_device("u1", TOKEN)
    quiet_from_ten_to(db, "u1")
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    result = orchestrator.process_change_event(db, event, transport, now=NOW)

    assert result.outcomes[0].push == "deferred"
    assert result.outcomes[0].email == "sent"
    assert len(emails) == 1


def test_email_switch_is_independent(db, transport, emails, add_search, add_device, add_event):
    add_search("u1", BOSTON_SEARCH, owner_email="buyer@example.com")
    add_device("u1", TOKEN)
    update_preferences(db, "u1", {"new_listing_email": False})
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    result = orchestrator.process_change_event(db, event, transport, now=NOW)

    assert result.outcomes[0].push == "sent"
    assert result.outcomes[0].email == "skipped"
    assert emails == []
    [skipped] = log_rows(db, channel="email")
    assert skipped.reason == "Email disabled by user"


def test_email_skipped_without_smtp(db, transport, add_search, add_device, add_event):
    add_search("u1", BOSTON_SEARCH, owner_email="buyer@example.com")
    add_device("u1", TOKEN)
    event = add_event(LISTING_ID, "new_listing", snapshot=boston_listing())

    result = orchestrator.process_change_event(db, event, transport, now=NOW)

    assert result.outcomes[0].email is None
    assert log_rows(db, channel="email") == []


def test_tour_requests_notify_agent_once_per_appointment(db, transport, add_device):
    add_device("agent", TOKEN)
    common = dict(
        client_id="c1",
        client_name="Jane Client",
        listing_id=LISTING_ID,
        address="12 Marlborough St",
        requested_for=datetime(2026, 3, 12, 14, 30),
        now=NOW,
    )

    first = orchestrator.notify_tour_requested(db, "agent", "1", transport, **common)
    second = orchestrator.notify_tour_requested(db, "agent", "2", transport, **common)
    repeat = orchestrator.notify_tour_requested(db, "agent", "1", transport, **common)

    assert (first.push, second.push, repeat.push) == ("sent", "sent", "deduped")
    assert [p["payload"]["appointment_id"] for p in transport.sent] == ["1", "2"]
    assert transport.sent[0]["payload"]["aps"]["alert"]["body"] == (
        "Jane Client requested a tour of 12 Marlborough St on Mar 12 at 2:30 PM"
    )


def test_tour_request_follows_saved_search_switch(db, transport, add_device):
    add_device("agent", TOKEN)
    update_preferences(db, "agent", {"saved_search_push": False})

    outcome = orchestrator.notify_tour_requested(db, "agent", "1", transport, now=NOW)

    assert outcome.push == "skipped"
    assert transport.sent == []


def test_tour_request_never_raises(db, add_device):
    add_device("agent", TOKEN)
    outcome = orchestrator.notify_tour_requested(db, "agent", "1", FakeTransport(configured=False), now=NOW)
    assert outcome is None
