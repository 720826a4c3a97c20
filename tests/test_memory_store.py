"""Tests for the in-memory repository."""

import threading
from datetime import timedelta

import pytest

from trustgate.storage.errors import ConstraintViolation
from trustgate.storage.models import LoginSession, TenantSecurityPolicy, new_id


class TestUsers:
    """User records."""

    def test_duplicate_email(self, store):
        """Emails are unique."""
        store.create_user("jane@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user("jane@example.com")

    def test_mark_verified(self, store):
        """Verification flags are set through the repository."""
        user = store.create_user("jane@example.com")
        store.mark_email_verified(user.id)
        store.mark_phone_verified(user.id)
        fresh = store.get_user(user.id)
        assert fresh.email_verified and fresh.phone_verified
        assert store.update_user("missing", email_verified=True) is None

    def test_policy_round_trip(self, store):
        """Policies are stored per tenant."""
        assert store.get_tenant_policy("t") is None
        store.save_tenant_policy(TenantSecurityPolicy(tenant_id="t", require_mfa=False))
        assert store.get_tenant_policy("t").require_mfa is False


class TestSessions:
    """Session history."""

    def test_recent_sessions_limit_and_order(self, store, clock):
        """Newest non-revoked sessions first, up to the limit."""
        user = store.create_user("jane@example.com")
        ids = []
        for _ in range(4):
            clock.advance(minutes=1)
            ids.append(store.record_session(LoginSession(id=new_id(), user_id=user.id, created_at=clock())).id)
        store.revoke_session(ids[-1])

        recent = store.list_recent_sessions(user.id, limit=2)
        assert [s.id for s in recent] == [ids[2], ids[1]]

    def test_session_for_unknown_user(self, store):
        """Sessions must belong to a user."""
        with pytest.raises(ConstraintViolation):
            store.record_session(LoginSession(id=new_id(), user_id="missing"))


class TestAlertLedger:
    """Atomic fingerprint claims."""

    def test_claim_respects_window(self, store, clock):
        """A fingerprint can be claimed again only after the window."""
        now = clock()
        window = timedelta(minutes=5)
        assert store.claim_alert_fingerprint("u", "login_alert", "f", since=now - window, now=now)
        assert not store.claim_alert_fingerprint("u", "login_alert", "f", since=now - window, now=now)
        assert store.claim_alert_fingerprint("u", "suspicious_login", "f", since=now - window, now=now)

        later = now + timedelta(minutes=6)
        assert store.claim_alert_fingerprint("u", "login_alert", "f", since=later - window, now=later)
        assert len(store.alert_log) == 3

    def test_concurrent_claims_have_one_winner(self, store, clock):
        """Parallel claims for the same fingerprint produce one ledger row."""
        now = clock()
        results = []

        def claim():
            results.append(
                store.claim_alert_fingerprint(
                    "u", "login_alert", "f", since=now - timedelta(minutes=5), now=now
                )
            )

        threads = [threading.Thread(target=claim) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert len(store.alert_log) == 1
