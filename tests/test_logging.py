"""Tests for correlation IDs and log redaction."""

import pytest

from trustgate.logging import _add_correlation_id, correlation_scope, get_correlation_id
from trustgate.service.challenge import CriticalActionChallengeService
from trustgate.service.login_alerts import LoginAnomalyDetector


class RecordingUsers:
    """User lookup that notes the correlation ID bound when it is called."""

    def __init__(self):
        self.seen = []

    def get_user(self, user_id):
        self.seen.append(get_correlation_id())
        return None


class TestCorrelationScope:
    """Binding and clearing correlation IDs."""

    def test_scope_binds_and_clears(self):
        """The ID is visible to the processor only inside the block."""
        with correlation_scope("flow-1") as cid:
            assert cid == "flow-1"
            assert _add_correlation_id(None, "info", {}) == {"correlation_id": "flow-1"}
        assert get_correlation_id() is None
        assert _add_correlation_id(None, "info", {}) == {}

    def test_nested_scope_keeps_outer_id(self):
        """A flow started inside another reuses the caller's ID."""
        with correlation_scope("outer"):
            with correlation_scope() as inner:
                assert inner == "outer"
            assert get_correlation_id() == "outer"

    def test_generated_ids_differ(self):
        """Each unbound flow gets its own ID."""
        with correlation_scope() as first:
            pass
        with correlation_scope() as second:
            pass
        assert first and second and first != second

    @pytest.mark.asyncio
    async def test_flows_bind_an_id(self, cache, clock):
        """Challenge creation and login checks log under a correlation ID."""
        users = RecordingUsers()
        challenges = CriticalActionChallengeService(users, cache, mfa_verifier=None, clock=clock)
        await challenges.create("u1", "account_deletion", "u1", "jane@example.com")
        await LoginAnomalyDetector(users, clock=clock).check("u1", "8.8.8.8")

        assert len(users.seen) == 2
        assert all(users.seen)
        assert get_correlation_id() is None
