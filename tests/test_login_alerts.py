"""Tests for login anomaly detection and alert deduplication."""

from datetime import timedelta

import pytest

from trustgate.config import Settings
from trustgate.service.geolocation import GeoLocation, StaticGeoResolver
from trustgate.service.login_alerts import LoginAnomalyDetector, alert_fingerprint
from trustgate.storage.models import LoginSession, new_id

CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"

BERLIN = GeoLocation(city="Berlin", country="Germany", country_code="DE", latitude=52.52, longitude=13.405)
POTSDAM = GeoLocation(city="Potsdam", country="Germany", country_code="DE", latitude=52.39, longitude=13.06)
TOKYO = GeoLocation(city="Tokyo", country="Japan", country_code="JP", latitude=35.68, longitude=139.69)

GEO = StaticGeoResolver(
    {
        "8.8.8.": BERLIN,
        "8.8.4.": POTSDAM,
        "1.1.1.": TOKYO,
    }
)


class FailingResolver:
    async def locate(self, ip):
        raise TimeoutError("geo lookup timed out")


@pytest.fixture
def user(store):
    return store.create_user("jane@example.com", first_name="Jane")


@pytest.fixture
def detector(store, dispatcher, clock):
    return LoginAnomalyDetector(store, geo_resolver=GEO, dispatcher=dispatcher, clock=clock)


def add_session(store, clock, user_id, *, ua=CHROME, ip="8.8.8.8", browser="Chrome", location=BERLIN):
    return store.record_session(
        LoginSession(
            id=new_id(),
            user_id=user_id,
            created_at=clock(),
            user_agent=ua,
            browser=browser,
            os="Windows",
            ip_address=ip,
            location_city=location.city if location else None,
            location_country=location.country if location else None,
            location_country_code=location.country_code if location else None,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
        )
    )


class TestDetection:
    """Signals compared against session history."""

    @pytest.mark.asyncio
    async def test_cold_start_is_silent(self, detector, user, store, notifier, dispatcher):
        """The first login never alerts."""
        result = await detector.check(user.id, "1.1.1.1", FIREFOX)
        await dispatcher.drain()

        assert result.alerts == []
        assert not result.is_suspicious
        assert store.list_login_alerts(user.id) == []
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_known_context_is_silent(self, detector, user, store, clock):
        """Same browser, subnet and city raise nothing."""
        add_session(store, clock, user.id)
        result = await detector.check(user.id, "8.8.8.200", CHROME)
        assert result.alerts == []

    @pytest.mark.asyncio
    async def test_new_subnet_nearby_is_new_device_only(self, detector, user, store, clock):
        """A different /24 within 100 km flags only the device."""
        add_session(store, clock, user.id)
        result = await detector.check(user.id, "8.8.4.4", CHROME)

        assert result.is_new_device
        assert not result.is_new_location
        assert not result.is_new_browser
        assert not result.is_suspicious
        assert result.alerts == ["New device detected"]

    @pytest.mark.asyncio
    async def test_far_location_and_new_browser_is_suspicious(
        self, detector, user, store, clock, notifier, dispatcher
    ):
        """Three signals make a suspicious login with one alert row per signal."""
        add_session(store, clock, user.id)
        result = await detector.check(user.id, "1.1.1.1", FIREFOX)
        await dispatcher.drain()

        assert result.is_new_device and result.is_new_location and result.is_new_browser
        assert result.is_suspicious
        assert result.alerts == [
            "New device detected",
            "New location: Tokyo, Japan",
            "New browser: Firefox",
        ]

        rows = store.list_login_alerts(user.id)
        assert sorted(r.alert_type for r in rows) == ["new_browser", "new_device", "new_location"]
        assert all(r.is_suspicious for r in rows)
        assert rows[0].location == {"city": "Tokyo", "country": "Japan", "country_code": "JP"}
        assert rows[0].device_info["browser"] == "Firefox"

        assert len(notifier.sent) == 1
        recipient, template, data = notifier.sent[0]
        assert (recipient, template) == ("jane@example.com", "login_alert")
        assert data["is_suspicious"] is True
        assert data["location"] == "Tokyo, Japan"

    @pytest.mark.asyncio
    async def test_unresolved_location_is_not_new(self, detector, user, store, clock):
        """An address the resolver does not know never flags location."""
        add_session(store, clock, user.id)
        result = await detector.check(user.id, "9.9.9.9", CHROME)
        assert result.is_new_device
        assert not result.is_new_location

    @pytest.mark.asyncio
    async def test_geolocation_failure_is_swallowed(self, store, user, clock, dispatcher):
        """Resolver errors are treated as an unknown location."""
        detector = LoginAnomalyDetector(
            store, geo_resolver=FailingResolver(), dispatcher=dispatcher, clock=clock
        )
        add_session(store, clock, user.id)
        result = await detector.check(user.id, "1.1.1.1", CHROME)
        assert result.is_new_device
        assert not result.is_new_location

    @pytest.mark.asyncio
    async def test_unknown_browser_is_not_new(self, detector, user, store, clock):
        """Unparseable agents do not count as a new browser."""
        add_session(store, clock, user.id)
        result = await detector.check(user.id, "8.8.8.8", "curl/8.4.0")
        assert not result.is_new_browser

    @pytest.mark.asyncio
    async def test_browser_comparison_ignores_case(self, detector, user, store, clock):
        """Known browsers are matched case-insensitively."""
        add_session(store, clock, user.id, browser="chrome")
        result = await detector.check(user.id, "8.8.8.8", CHROME)
        assert not result.is_new_browser

    @pytest.mark.asyncio
    async def test_revoked_sessions_are_ignored(self, detector, user, store, clock):
        """Only live sessions form the baseline."""
        session = add_session(store, clock, user.id)
        store.revoke_session(session.id, clock())
        result = await detector.check(user.id, "1.1.1.1", FIREFOX)
        assert result.alerts == []

    @pytest.mark.asyncio
    async def test_notifications_disabled(self, detector, store, clock):
        """Opted-out and unknown users get an empty result."""
        user = store.create_user("quiet@example.com", login_notification_enabled=False)
        add_session(store, clock, user.id)

        assert (await detector.check(user.id, "1.1.1.1", FIREFOX)).alerts == []
        assert (await detector.check("missing", "1.1.1.1", FIREFOX)).alerts == []


class TestDeduplication:
    """Cooldown-based alert deduplication."""

    @pytest.mark.asyncio
    async def test_repeat_within_cooldown_is_dropped(
        self, detector, user, store, clock, notifier, dispatcher
    ):
        """Within five minutes the same context produces no new rows or emails."""
        add_session(store, clock, user.id)

        first = await detector.check(user.id, "8.8.4.4", CHROME)
        clock.advance(minutes=4, seconds=59)
        second = await detector.check(user.id, "8.8.4.9", CHROME)
        await dispatcher.drain()

        assert first.is_new_device and second.is_new_device
        assert len(store.list_login_alerts(user.id)) == 1
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_repeat_after_cooldown_alerts_again(
        self, detector, user, store, clock, notifier, dispatcher
    ):
        """Once the cooldown passes a new alert is produced."""
        add_session(store, clock, user.id)

        await detector.check(user.id, "8.8.4.4", CHROME)
        clock.advance(minutes=5, seconds=1)
        await detector.check(user.id, "8.8.4.4", CHROME)
        await dispatcher.drain()

        assert len(store.list_login_alerts(user.id)) == 2
        assert len(notifier.sent) == 2

    @pytest.mark.asyncio
    async def test_suspicious_cooldown_is_fifteen_minutes(self, detector, user, store, clock):
        """Suspicious logins use the longer cooldown."""
        add_session(store, clock, user.id)

        await detector.check(user.id, "1.1.1.1", FIREFOX)
        clock.advance(minutes=14)
        await detector.check(user.id, "1.1.1.1", FIREFOX)
        assert len(store.list_login_alerts(user.id)) == 3

        clock.advance(minutes=2)
        await detector.check(user.id, "1.1.1.1", FIREFOX)
        assert len(store.list_login_alerts(user.id)) == 6

    @pytest.mark.asyncio
    async def test_cooldowns_come_from_settings(self, store, user, clock, dispatcher):
        """Cooldown lengths are configurable."""
        detector = LoginAnomalyDetector(
            store,
            geo_resolver=GEO,
            dispatcher=dispatcher,
            settings=Settings(login_alert_cooldown_seconds=30),
            clock=clock,
        )
        add_session(store, clock, user.id)

        await detector.check(user.id, "8.8.4.4", CHROME)
        clock.advance(seconds=31)
        await detector.check(user.id, "8.8.4.4", CHROME)
        assert len(store.list_login_alerts(user.id)) == 2

    def test_fingerprint_uses_24_subnet(self):
        """Hosts in one /24 share a dedup fingerprint."""
        assert alert_fingerprint(CHROME, "8.8.4.4") == alert_fingerprint(CHROME, "8.8.4.200")
        assert alert_fingerprint(CHROME, "8.8.4.4") != alert_fingerprint(CHROME, "8.8.5.4")
        assert alert_fingerprint(CHROME, "8.8.4.4") != alert_fingerprint(FIREFOX, "8.8.4.4")


class TestAlertListing:
    """Listing and acknowledging alerts."""

    @pytest.mark.asyncio
    async def test_list_and_acknowledge(self, detector, user, store, clock):
        """Alerts can be listed newest first and acknowledged by their owner."""
        add_session(store, clock, user.id)
        await detector.check(user.id, "8.8.4.4", CHROME)
        clock.advance(minutes=10)
        await detector.check(user.id, "1.1.1.1", FIREFOX)

        alerts = detector.list_alerts(user.id)
        assert len(alerts) == 4
        assert alerts[0].created_at == clock()
        assert len(detector.list_alerts(user.id, limit=2)) == 2

        target = alerts[-1]
        assert detector.acknowledge(target.id, "someone-else") is False
        assert detector.acknowledge(target.id, user.id) is True
        assert target.acknowledged_at == clock()

    @pytest.mark.asyncio
    async def test_older_sessions_outside_limit_are_ignored(self, store, user, clock, dispatcher):
        """Only the configured number of recent sessions is compared."""
        detector = LoginAnomalyDetector(
            store,
            geo_resolver=GEO,
            dispatcher=dispatcher,
            settings=Settings(login_history_limit=2),
            clock=clock,
        )
        add_session(store, clock, user.id, ua=FIREFOX, browser="Firefox", ip="1.1.1.1", location=TOKYO)
        for _ in range(2):
            clock.advance(minutes=1)
            add_session(store, clock, user.id)

        result = await detector.check(user.id, "1.1.1.1", FIREFOX)
        assert result.is_new_browser
        assert result.is_new_location


def test_cooldown_for_unknown_type_uses_default(store):
    """Unlisted alert types fall back to the default cooldown."""
    detector = LoginAnomalyDetector(store)
    assert detector.cooldown_for("login_alert") == timedelta(minutes=5)
    assert detector.cooldown_for("suspicious_login") == timedelta(minutes=15)
    assert detector.cooldown_for("other") == timedelta(minutes=1)
