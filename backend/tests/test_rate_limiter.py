from collections import Counter

import pytest

from conftest import NOW
from listing_alerts.services.push import rate_limiter
from listing_alerts.services.push.rate_limiter import RateAlertNotifier, RateWindowStore, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class RecordingStore(RateWindowStore):
    def __init__(self, session_factory):
        super().__init__(session_factory, name="test")
        self.results = []

    def hit(self, now):
        result = super().hit(now)
        self.results.append(result)
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(session_factory):
    return RecordingStore(session_factory)


def make_limiter(store, clock, **kwargs):
    return SlidingWindowRateLimiter(store, cap=500, threshold_percent=60, clock=clock, sleep=clock.sleep, **kwargs)


def test_no_delay_up_to_threshold_then_paced(store, clock):
    limiter = make_limiter(store, clock)
    delays = [limiter.acquire() for _ in range(1000)]

    assert delays[:300] == [0.0] * 300
    paced = delays[300:500]
    assert all(d > 0 for d in paced)
    assert all(b >= a - 1e-9 for a, b in zip(paced, paced[1:]))
    assert max(paced) <= 0.1


def test_never_more_than_cap_per_window(store, clock):
    limiter = make_limiter(store, clock)
    for _ in range(1000):
        limiter.acquire()

    admitted = Counter(start for hits, start in store.results if hits <= 500)
    assert sum(admitted.values()) == 1000
    assert len(admitted) >= 2
    assert max(admitted.values()) <= 500


def test_compute_delay(store, clock):
    limiter = make_limiter(store, clock)
    assert limiter.threshold == 300
    assert limiter.compute_delay(300, 0.0) == 0.0
    # Half a second for two requests would be 0.5s each; capped
    assert limiter.compute_delay(499, 0.0) == 0.1
    assert limiter.compute_delay(500, 0.5) == 0.1
    assert limiter.compute_delay(450, 0.9) == pytest.approx(0.1 / 51)
    assert limiter.compute_delay(450, 2.0) == 0.0


def test_window_rolls_over(store, clock):
    limiter = make_limiter(store, clock)
    limiter.acquire()
    clock.now += 1.5
    limiter.acquire()
    assert store.results == [(1, 1_000_000.0), (1, 1_000_001.5)]


def test_stats_reflect_shared_window(session_factory, store, clock):
    limiter = make_limiter(store, clock)
    assert limiter.stats()["count"] == 0
    for _ in range(350):
        limiter.acquire()

    # A second limiter on the same window name sees the same count
    other = make_limiter(RateWindowStore(session_factory, name="test"), clock)
    stats = other.stats()
    assert stats["count"] == 350
    assert stats["limit"] == 500
    assert stats["threshold"] == 300
    assert stats["is_throttling"] is True
    assert stats["utilization_percent"] == 70.0


def test_alert_fires_at_alert_percent(store, clock):
    alerts = []
    limiter = make_limiter(store, clock, on_alert=alerts.append)
    for _ in range(399):
        limiter.acquire()
    assert alerts == []
    limiter.acquire()
    assert alerts[0]["count"] == 400
    assert alerts[0]["utilization_percent"] == 80.0


def test_alert_notifier_once_per_hour_across_processes(session_factory, monkeypatch):
    sent = []
    monkeypatch.setattr(rate_limiter, "send_admin_alert_email", lambda to, subject, body: sent.append(to))
    first = RateAlertNotifier(session_factory, admin_email="ops@example.com")
    second = RateAlertNotifier(session_factory, admin_email="ops@example.com")
    stats = {"count": 420, "limit": 500, "utilization_percent": 84.0, "threshold_percent": 60}
    now = NOW.timestamp()

    assert first({**stats, "now": now}) is True
    assert second({**stats, "now": now + 10}) is False
    assert first({**stats, "now": now + 20}) is False
    assert second({**stats, "now": now + 3601}) is True
    assert sent == ["ops@example.com", "ops@example.com"]


def test_alert_notifier_without_admin_email_only_logs(session_factory, monkeypatch):
    sent = []
    monkeypatch.setattr(rate_limiter, "send_admin_alert_email", lambda *args: sent.append(args))
    notifier = RateAlertNotifier(session_factory, admin_email="")
    assert notifier({"count": 450, "limit": 500, "now": NOW.timestamp()}) is True
    assert sent == []
