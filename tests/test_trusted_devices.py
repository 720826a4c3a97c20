"""Tests for trusted devices (MFA skip)."""

from datetime import timedelta

import pytest

from trustgate.service.fingerprint import DeviceContext
from trustgate.service.trusted_devices import TrustedDeviceService
from trustgate.storage.errors import ConstraintViolation

CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"

LAPTOP = DeviceContext(user_agent=CHROME, accept_language="en-US", ip_address="203.0.113.7")
LAPTOP_OTHER_HOST = DeviceContext(user_agent=CHROME, accept_language="en-US", ip_address="203.0.9.9")
LAPTOP_OTHER_NETWORK = DeviceContext(user_agent=CHROME, accept_language="en-US", ip_address="198.51.100.7")
DESKTOP = DeviceContext(user_agent=FIREFOX, accept_language="en-US", ip_address="203.0.113.7")


@pytest.fixture
def user(store):
    return store.create_user("jane@example.com")


@pytest.fixture
def service(store, clock):
    return TrustedDeviceService(store, clock=clock)


class TestTrust:
    """Trusting and matching devices."""

    def test_trust_then_match(self, service, user, clock):
        """A trusted device is recognized on the same /16 network."""
        record = service.trust(user.id, LAPTOP)

        assert record.device_name == "Chrome on Windows 10/11"
        assert record.browser == "Chrome"
        assert record.trusted_until == clock() + timedelta(days=30)
        assert service.is_trusted(user.id, LAPTOP)
        assert service.is_trusted(user.id, LAPTOP_OTHER_HOST)
        assert not service.is_trusted(user.id, LAPTOP_OTHER_NETWORK)
        assert not service.is_trusted(user.id, DESKTOP)

    def test_trust_is_per_user(self, service, user, store):
        """Another user's trust does not carry over."""
        other = store.create_user("other@example.com")
        service.trust(user.id, LAPTOP)
        assert not service.is_trusted(other.id, LAPTOP)

    def test_retrust_extends_existing_record(self, service, user, clock):
        """Trusting again refreshes the expiry instead of adding a row."""
        first = service.trust(user.id, LAPTOP)
        clock.advance(days=10)
        second = service.trust(user.id, LAPTOP_OTHER_HOST)

        assert second.id == first.id
        assert second.trusted_until == clock() + timedelta(days=30)
        assert second.ip_address == "203.0.9.9"
        assert len(service.list(user.id)) == 1

    def test_unknown_user(self, service):
        """Trusting for a missing user is a constraint failure."""
        with pytest.raises(ConstraintViolation):
            service.trust("missing", LAPTOP)

    def test_custom_trust_period(self, store, user, clock):
        """The trust period is configurable."""
        service = TrustedDeviceService(store, trust_days=7, clock=clock)
        assert service.trust(user.id, LAPTOP).trusted_until == clock() + timedelta(days=7)


class TestExpiry:
    """Lazy expiry and purging."""

    def test_expires_after_thirty_days(self, service, user, clock):
        """Trust lapses exactly at trusted_until."""
        service.trust(user.id, LAPTOP)

        clock.advance(days=30, seconds=-1)
        assert service.is_trusted(user.id, LAPTOP)

        clock.advance(seconds=1)
        assert not service.is_trusted(user.id, LAPTOP)
        assert service.list(user.id) == []

    def test_purge_removes_only_expired(self, service, user, store, clock):
        """purge_expired deletes lapsed rows and keeps live ones."""
        service.trust(user.id, LAPTOP)
        clock.advance(days=20)
        service.trust(user.id, DESKTOP)
        clock.advance(days=11)

        assert service.purge_expired() == 1
        remaining = store.list_trusted_devices(user.id)
        assert [d.browser for d in remaining] == ["Firefox"]


class TestListingAndRevocation:
    """Listing and untrusting."""

    def test_list_newest_first(self, service, user, clock):
        """Devices are listed newest first."""
        service.trust(user.id, LAPTOP)
        clock.advance(minutes=5)
        service.trust(user.id, DESKTOP)
        assert [d.browser for d in service.list(user.id)] == ["Firefox", "Chrome"]

    def test_untrust_one(self, service, user, store):
        """Only the owner can remove a device."""
        other = store.create_user("other@example.com")
        record = service.trust(user.id, LAPTOP)

        assert service.untrust_one(record.id, other.id) is False
        assert service.untrust_one(record.id, user.id) is True
        assert service.untrust_one(record.id, user.id) is False
        assert not service.is_trusted(user.id, LAPTOP)

    def test_untrust_all(self, service, user):
        """Removing all devices reports the count."""
        service.trust(user.id, LAPTOP)
        service.trust(user.id, DESKTOP)
        assert service.untrust_all(user.id) == 2
        assert service.untrust_all(user.id) == 0
        assert service.list(user.id) == []
