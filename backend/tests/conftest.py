import os

# Before any listing_alerts import: settings and the module-level engine read these
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SMTP_USER"] = ""
os.environ["SMTP_PASSWORD"] = ""

from datetime import datetime, timezone

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import listing_alerts.models  # noqa: F401
from listing_alerts.core.errors import ConfigurationError, PushDeliveryError, StoreError
from listing_alerts.db.base import Base
from listing_alerts.models.device_endpoint import DeviceEndpoint
from listing_alerts.models.favorite import Favorite
from listing_alerts.models.listing_change_event import ListingChangeEvent
from listing_alerts.models.saved_search import SavedSearch
from listing_alerts.services.push.apns import ApnsResponse

# Tuesday 11:00 in Boston (EDT)
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="session")
def signing_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def p8_key(signing_key) -> str:
    return signing_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("utf-8")


class FakeTransport:
    """Stands in for ApnsTransport. Scripted failures per device token; records every send."""

    def __init__(self, failures=None, configured=True):
        # token -> exception, or list of exceptions / None consumed one per send
        self.failures = dict(failures or {})
        self.configured = configured
        self.sent = []

    def ensure_configured(self):
        if not self.configured:
            raise ConfigurationError("APNS_KEY_ID and APNS_TEAM_ID are required")

    def send(self, device_token, payload, sandbox):
        self.sent.append({"token": device_token, "payload": payload, "sandbox": sandbox})
        failure = self.failures.get(device_token)
        if isinstance(failure, list):
            failure = failure.pop(0) if failure else None
        if isinstance(failure, PushDeliveryError):
            raise failure
        return ApnsResponse(status_code=200, apns_id="test-apns-id")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None


class BrokenRateWindow:
    """Limiter whose shared window store is down for the first `failures` acquires."""

    def __init__(self, failures=1):
        self.failures = failures
        self.acquired = 0

    def acquire(self):
        if self.failures > 0:
            self.failures -= 1
            raise StoreError("Rate window apns update failed: database is locked")
        self.acquired += 1
        return 0.0


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def add_search(db):
    def _add(user_id, filters, name="Back Bay condos", frequency="instant", is_active=True, owner_email=None,
             created_at=None):
        row = SavedSearch(
            user_id=user_id,
            name=name,
            filters=filters,
            notification_frequency=frequency,
            is_active=is_active,
            owner_email=owner_email,
            created_at=created_at or NOW,
            updated_at=created_at or NOW,
        )
        db.add(row)
        db.commit()
        return row

    return _add


@pytest.fixture
def add_device(db):
    def _add(user_id, token, is_sandbox=False, is_active=True, last_used_at=None):
        row = DeviceEndpoint(
            user_id=user_id,
            device_token=token,
            platform="ios",
            is_sandbox=is_sandbox,
            is_active=is_active,
            last_used_at=last_used_at or NOW,
            created_at=last_used_at or NOW,
            updated_at=last_used_at or NOW,
        )
        db.add(row)
        db.commit()
        return row

    return _add


@pytest.fixture
def add_favorite(db):
    def _add(user_id, listing_id):
        row = Favorite(user_id=user_id, listing_id=listing_id, created_at=NOW)
        db.add(row)
        db.commit()
        return row

    return _add


@pytest.fixture
def add_event(db):
    def _add(listing_id, change_kind, snapshot=None, previous_value=None, current_value=None, details=None,
             occurred_at=None):
        row = ListingChangeEvent(
            listing_id=listing_id,
            change_kind=change_kind,
            previous_value=previous_value,
            current_value=current_value,
            listing_snapshot=snapshot or {},
            details=details,
            occurred_at=occurred_at or NOW,
            attempts=0,
        )
        db.add(row)
        db.commit()
        return row

    return _add


def boston_listing(**overrides):
    data = {
        "listing_id": "73000001",
        "listing_key": "abc123",
        "status": "Active",
        "list_price": 600000,
        "address": "12 Marlborough St",
        "city": "Boston",
        "postal_code": "02116",
        "latitude": 42.3523,
        "longitude": -71.0763,
        "property_type": "Residential",
        "property_sub_type": "Condominium",
        "living_area": 1100,
        "bedrooms_total": 2,
        "bathrooms_total": 2,
    }
    data.update(overrides)
    return data
