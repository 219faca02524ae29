from datetime import timedelta

from conftest import NOW
from listing_alerts.models.device_endpoint import DeviceEndpoint
from listing_alerts.services.push import endpoints

TOKEN_A = "aa" * 32
TOKEN_B = "bb" * 32


def test_register_is_idempotent(db):
    first = endpoints.register(db, "u1", TOKEN_A, now=NOW)
    second = endpoints.register(db, "u1", f"  {TOKEN_A}  ", is_sandbox=True, now=NOW + timedelta(hours=1))
    assert first.id == second.id
    assert db.query(DeviceEndpoint).count() == 1
    db.refresh(second)
    assert second.is_sandbox is True


def test_register_reactivates_deactivated_token(db):
    endpoints.register(db, "u1", TOKEN_A, now=NOW)
    endpoints.deactivate_token(db, TOKEN_A, now=NOW)
    db.commit()
    assert endpoints.active_endpoints(db, "u1") == []

    row = endpoints.register(db, "u1", TOKEN_A, now=NOW + timedelta(days=1))
    db.refresh(row)
    assert row.is_active is True
    assert row.deactivated_at is None
    assert row.deactivation_reason is None


def test_unregister(db):
    endpoints.register(db, "u1", TOKEN_A, now=NOW)
    assert endpoints.unregister(db, "u1", TOKEN_A, now=NOW)
    assert not endpoints.unregister(db, "u1", TOKEN_A, now=NOW)
    assert not endpoints.unregister(db, "u2", TOKEN_B, now=NOW)
    row = db.query(DeviceEndpoint).one()
    assert row.deactivation_reason == "user_unregistered"


def test_active_endpoints_most_recent_first(db):
    older = endpoints.register(db, "u1", TOKEN_A, now=NOW - timedelta(days=2))
    newer = endpoints.register(db, "u1", TOKEN_B, now=NOW)
    endpoints.register(db, "u2", "cc" * 32, now=NOW)
    assert [e.id for e in endpoints.active_endpoints(db, "u1")] == [newer.id, older.id]


def test_deactivate_token_twice_changes_nothing_the_second_time(db):
    endpoints.register(db, "u1", TOKEN_A, now=NOW)
    assert endpoints.deactivate_token(db, TOKEN_A, now=NOW) == 1
    db.commit()
    assert endpoints.deactivate_token(db, TOKEN_A, now=NOW) == 0


def test_purge_stale(db, add_device):
    add_device("u1", TOKEN_A, last_used_at=NOW - timedelta(days=91))
    add_device("u2", TOKEN_B, last_used_at=NOW - timedelta(days=10))
    gone_id = add_device("u3", "cc" * 32, is_active=False, last_used_at=NOW - timedelta(days=200)).id

    result = endpoints.purge_stale(db, now=NOW)

    assert result == {"deactivated": 1, "deleted": 1}
    assert db.get(DeviceEndpoint, gone_id) is None
    stale = db.query(DeviceEndpoint).filter(DeviceEndpoint.user_id == "u1").one()
    assert stale.is_active is False
    assert stale.deactivation_reason == "stale"


def test_stats(db, add_device):
    add_device("u1", TOKEN_A, last_used_at=NOW - timedelta(days=40))
    add_device("u2", TOKEN_B, is_sandbox=True)
    add_device("u3", "cc" * 32, is_active=False)
    stats = endpoints.get_stats(db, now=NOW)
    assert stats == {
        "total": 3,
        "active": 2,
        "inactive": 1,
        "sandbox": 1,
        "production": 1,
        "stale_30d": 1,
        "stale_90d": 0,
    }
