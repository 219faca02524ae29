from datetime import timedelta

from conftest import NOW, BrokenRateWindow, FakeTransport
from listing_alerts.core.errors import PermanentEndpointError, TransportError
from listing_alerts.models.device_endpoint import DeviceEndpoint
from listing_alerts.models.push_attempt import PushAttempt
from listing_alerts.models.retry_queue_entry import RetryQueueEntry
from listing_alerts.services import dedup
from listing_alerts.services.push import retry_queue
from listing_alerts.services.push.delivery import (
    OUTCOME_DEACTIVATED,
    OUTCOME_QUEUED_RETRY,
    OUTCOME_SENT,
    EndpointTarget,
    deliver_to_endpoint,
)

TOKEN = "f0" * 32
APNS_BODY = {"aps": {"alert": {"title": "New Listing", "body": "12 Marlborough St, Boston"}}}


def server_error():
    return TransportError("APNs returned 500", status_code=500, reason="InternalServerError")


def first_send(db, transport, endpoint, log_id=None):
    return deliver_to_endpoint(
        db,
        transport,
        None,
        target=EndpointTarget.from_endpoint(endpoint),
        user_id=endpoint.user_id,
        notification_type="new_listing",
        apns_payload=APNS_BODY,
        delivery_log_id=log_id,
        now=NOW,
    )


def only_entry(db):
    entry = db.query(RetryQueueEntry).one()
    db.refresh(entry)
    return entry


def test_backoff_schedule_then_dead_letter(db, add_device):
    endpoint = add_device("u1", TOKEN)
    transport = FakeTransport(failures={TOKEN: server_error()})

    assert first_send(db, transport, endpoint) == OUTCOME_QUEUED_RETRY
    entry = only_entry(db)
    assert entry.retry_count == 0
    assert entry.status == "pending"
    assert entry.payload == APNS_BODY

    now = NOW
    delays = []
    for _ in range(5):
        entry = only_entry(db)
        delay = entry.next_retry_at.replace(tzinfo=None) - now.replace(tzinfo=None)
        delays.append(int(delay.total_seconds()))
        now = now + delay
        # Not due a second early
        assert retry_queue.process_due(db, transport, now=now - timedelta(seconds=1))["processed"] == 0
        retry_queue.process_due(db, transport, now=now)

    assert delays == [60, 120, 240, 480, 960]
    entry = only_entry(db)
    assert entry.status == "failed"
    assert entry.retry_count == 5
    assert entry.last_error == "max retries reached: APNs returned 500 (status=500, reason=InternalServerError)"
    assert len(transport.sent) == 6
    assert db.query(PushAttempt).filter(PushAttempt.source == "retry").count() == 5


def test_success_on_retry_completes_and_flips_log(db, add_device):
    endpoint = add_device("u1", TOKEN)
    transport = FakeTransport(failures={TOKEN: [server_error(), None]})
    log = dedup.record_sent(db, "u1", "L1", "new_listing", title="New Listing", now=NOW)

    assert first_send(db, transport, endpoint, log_id=log.id) == OUTCOME_QUEUED_RETRY
    dedup.mark_failed(db, log.id, "Transient failure, queued for retry")

    counts = retry_queue.process_due(db, transport, now=NOW + timedelta(seconds=60))
    assert counts == {"processed": 1, "completed": 1, "rescheduled": 0, "failed": 0, "released": 0}
    entry = only_entry(db)
    assert entry.status == "completed"
    assert entry.retry_count == 1
    db.refresh(log)
    assert log.status == "sent"
    assert log.reason == "delivered on retry"


def test_rescheduled_retry_keeps_gateway_error(db, add_device):
    endpoint = add_device("u1", TOKEN)
    throttled = TransportError("APNs returned 429", status_code=429, reason="TooManyRequests")
    transport = FakeTransport(failures={TOKEN: [server_error(), throttled]})

    first_send(db, transport, endpoint)
    assert only_entry(db).last_error == "APNs returned 500 (status=500, reason=InternalServerError)"

    counts = retry_queue.process_due(db, transport, now=NOW + timedelta(seconds=60))

    assert counts["rescheduled"] == 1
    entry = only_entry(db)
    assert entry.retry_count == 1
    assert entry.last_error == "APNs returned 429 (status=429, reason=TooManyRequests)"


def test_store_error_releases_entry_and_drain_continues(db, add_device):
    endpoint = add_device("u1", TOKEN)
    other = add_device("u2", "e1" * 32)
    transport = FakeTransport(failures={TOKEN: server_error(), other.device_token: server_error()})
    first_send(db, transport, endpoint)
    first_send(db, transport, other)
    transport.failures.clear()
    due_at = NOW + timedelta(seconds=60)

    limiter = BrokenRateWindow(failures=1)
    counts = retry_queue.process_due(db, transport, limiter, now=due_at)

    assert counts["processed"] == 2
    assert counts["released"] == 1
    assert counts["completed"] == 1
    entries = db.query(RetryQueueEntry).order_by(RetryQueueEntry.id).all()
    for entry in entries:
        db.refresh(entry)
    released, completed = entries
    assert released.status == "pending"
    assert released.retry_count == 0
    assert released.next_retry_at.replace(tzinfo=None) == (due_at + timedelta(seconds=60)).replace(tzinfo=None)
    assert "Rate window" in released.last_error
    assert completed.status == "completed"

    # Picked up again by the next drain
    counts = retry_queue.process_due(db, transport, limiter, now=due_at + timedelta(seconds=60))
    assert counts["completed"] == 1
    db.refresh(released)
    assert released.status == "completed"


def test_unregistered_on_retry_deactivates_and_fails(db, add_device):
    endpoint = add_device("u1", TOKEN)
    gone = PermanentEndpointError("APNs returned 410 (Unregistered)", status_code=410, reason="Unregistered")
    transport = FakeTransport(failures={TOKEN: [server_error(), gone]})

    first_send(db, transport, endpoint)
    counts = retry_queue.process_due(db, transport, now=NOW + timedelta(seconds=60))

    assert counts["failed"] == 1
    entry = only_entry(db)
    assert entry.status == "failed"
    assert entry.last_error == (
        f"non-retriable: {OUTCOME_DEACTIVATED}: APNs returned 410 (Unregistered) (status=410, reason=Unregistered)"
    )
    db.refresh(endpoint)
    assert endpoint.is_active is False
    assert endpoint.deactivation_reason == "unregistered"


def test_unregistered_on_first_send_is_never_retried(db, add_device):
    endpoint = add_device("u1", TOKEN)
    other_user = add_device("u2", TOKEN)
    gone = PermanentEndpointError("APNs returned 410", status_code=410)
    transport = FakeTransport(failures={TOKEN: gone})

    assert first_send(db, transport, endpoint) == OUTCOME_DEACTIVATED
    assert db.query(RetryQueueEntry).count() == 0
    assert db.query(DeviceEndpoint).filter(DeviceEndpoint.is_active.is_(True)).count() == 0
    db.refresh(other_user)
    assert other_user.deactivated_at is not None


def test_delivered_send_records_redacted_attempt(db, add_device):
    endpoint = add_device("u1", TOKEN, last_used_at=NOW - timedelta(days=3))
    transport = FakeTransport()

    assert first_send(db, transport, endpoint) == OUTCOME_SENT
    attempt = db.query(PushAttempt).one()
    assert attempt.status == "sent"
    assert attempt.apns_status_code == 200
    assert attempt.device_token == f"{TOKEN[:16]}...{TOKEN[-8:]}"
    db.refresh(endpoint)
    assert endpoint.last_used_at.replace(tzinfo=None) == NOW.replace(tzinfo=None)


def test_due_is_fifo(db):
    ids = []
    for i in range(3):
        entry = retry_queue.enqueue(
            db,
            user_id=f"u{i}",
            endpoint_id=None,
            device_token=TOKEN,
            payload=APNS_BODY,
            notification_type="new_listing",
            now=NOW + timedelta(seconds=i),
        )
        ids.append(entry.id)
    due = retry_queue.due(db, now=NOW + timedelta(minutes=5))
    assert [e.id for e in due] == ids
    assert retry_queue.due(db, now=NOW) == []


def test_claim_is_exclusive(db):
    entry = retry_queue.enqueue(
        db, user_id="u1", endpoint_id=None, device_token=TOKEN, payload=APNS_BODY, notification_type="new_listing", now=NOW
    )
    assert retry_queue.claim(db, entry.id, now=NOW)
    assert not retry_queue.claim(db, entry.id, now=NOW)


def test_expire_and_cleanup(db):
    def add(status, created_at, updated_at=None):
        db.add(
            RetryQueueEntry(
                user_id="u1",
                device_token=TOKEN,
                payload=APNS_BODY,
                notification_type="new_listing",
                next_retry_at=created_at,
                status=status,
                created_at=created_at,
                updated_at=updated_at or created_at,
            )
        )
        db.commit()

    add("pending", NOW - timedelta(hours=25))
    add("processing", NOW - timedelta(hours=30))
    add("pending", NOW - timedelta(hours=1))
    add("completed", NOW - timedelta(days=8))
    add("completed", NOW - timedelta(days=2))
    add("failed", NOW - timedelta(days=31))
    add("failed", NOW - timedelta(days=10))

    assert retry_queue.expire_stale(db, now=NOW) == 2
    assert retry_queue.cleanup(db, now=NOW) == 2
    assert retry_queue.get_stats(db) == {
        "pending": 1,
        "processing": 0,
        "completed": 1,
        "failed": 1,
        "expired": 2,
    }
