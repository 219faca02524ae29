from datetime import timedelta

from conftest import NOW
from listing_alerts.models.delivery_log import DeliveryLogEntry
from listing_alerts.services import dedup
from listing_alerts.services.badges import get_badge_count, increment_badge


def send(db, user_id="u1", listing_id="L1", kind="new_listing", now=NOW, **kwargs):
    return dedup.record_sent(db, user_id, listing_id, kind, title="New Listing Match", now=now, **kwargs)


def test_signature_format():
    assert dedup.dedup_signature("u1", "new_listing", "L1", NOW) == "u1|new_listing|L1|2026-03-10T15"
    long_subject = "x" * 200
    assert dedup.dedup_signature("u1", "t", long_subject, NOW).count("x") == 120


def test_second_claim_in_same_hour_returns_none(db):
    first = send(db)
    assert first is not None
    assert first.dedup_signature == "u1|new_listing|L1|2026-03-10T15"
    assert send(db, now=NOW + timedelta(minutes=30)) is None
    assert db.query(DeliveryLogEntry).count() == 1


def test_same_signature_on_other_channel_is_separate(db):
    assert send(db) is not None
    assert send(db, channel="email") is not None


def test_subject_overrides_listing_in_signature(db):
    first = send(db, kind="tour_requested", subject="appointment:1")
    second = send(db, kind="tour_requested", subject="appointment:2")
    assert first is not None and second is not None
    assert first.dedup_signature != second.dedup_signature


def test_was_sent_window(db):
    send(db)
    assert dedup.was_sent(db, "u1", "L1", "new_listing", now=NOW + timedelta(hours=23))
    assert not dedup.was_sent(db, "u1", "L1", "new_listing", now=NOW + timedelta(hours=25))
    assert not dedup.was_sent(db, "u1", "L1", "price_change", now=NOW)
    assert not dedup.was_sent(db, "u2", "L1", "new_listing", now=NOW)
    assert not dedup.was_sent(db, "u1", "L1", "new_listing", channel="email", now=NOW)


def test_failed_rows_count_as_sent(db):
    row = send(db)
    dedup.mark_failed(db, row.id, "All devices failed")
    assert dedup.was_sent(db, "u1", "L1", "new_listing", now=NOW)
    db.refresh(row)
    assert row.status == "failed"
    assert row.reason == "All devices failed"


def test_skipped_rows_never_block(db):
    skipped = dedup.record_skipped(db, "u1", "L1", "new_listing", title="New Listing Match", reason="No active devices", now=NOW)
    assert skipped.dedup_signature is None
    assert not dedup.was_sent(db, "u1", "L1", "new_listing", now=NOW)
    assert send(db) is not None


def test_batch_check_sent(db):
    send(db, listing_id="L1")
    send(db, listing_id="L2", kind="price_change")
    send(db, listing_id="L3", now=NOW - timedelta(days=2))
    found = dedup.batch_check_sent(
        db,
        "u1",
        [("L1", "new_listing"), ("L2", "new_listing"), ("L2", "price_change"), ("L3", "new_listing")],
        now=NOW,
    )
    assert found == {("L1", "new_listing"), ("L2", "price_change")}
    assert dedup.batch_check_sent(db, "u1", [], now=NOW) == set()


def test_history_read_and_dismiss(db):
    a = send(db, listing_id="L1")
    b = send(db, listing_id="L2", now=NOW + timedelta(minutes=5))
    dedup.record_skipped(db, "u1", "L3", "new_listing", title="x", reason="Push disabled by user", now=NOW)

    history = dedup.list_history(db, "u1")
    assert [n["id"] for n in history["notifications"]] == [b.id, a.id]
    assert history["unread_count"] == 2

    read = dedup.mark_read(db, "u1", a.id, now=NOW)
    assert read.read_at is not None
    assert dedup.mark_read(db, "someone-else", b.id) is None
    assert dedup.list_history(db, "u1", unread_only=True)["notifications"][0]["id"] == b.id

    assert dedup.dismiss(db, "u1", b.id, now=NOW)
    assert not dedup.dismiss(db, "u1", 9999)
    history = dedup.list_history(db, "u1")
    assert [n["id"] for n in history["notifications"]] == [a.id]
    assert history["unread_count"] == 0


def test_mark_all_read_resets_badge(db):
    send(db, listing_id="L1")
    send(db, listing_id="L2")
    increment_badge(db, "u1", now=NOW)
    increment_badge(db, "u1", now=NOW)
    assert get_badge_count(db, "u1") == 2

    assert dedup.mark_all_read(db, "u1", now=NOW) == 2
    assert get_badge_count(db, "u1") == 0
    assert dedup.list_history(db, "u1")["unread_count"] == 0


def test_cleanup_log(db):
    send(db, listing_id="old", now=NOW - timedelta(days=31))
    send(db, listing_id="new", now=NOW - timedelta(days=1))
    result = dedup.cleanup_log(db, 30, now=NOW)
    assert result["delivery_log"] == 1
    assert [r.listing_id for r in db.query(DeliveryLogEntry).all()] == ["new"]
