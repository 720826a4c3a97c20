"""Tests for TOTP and backup code verification."""

import pytest

from trustgate.service.mfa import (
    TotpMfaVerifier,
    generate_backup_codes,
    generate_totp,
    hash_backup_code,
)

# RFC 6238 test key ("12345678901234567890") in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestTotp:
    """Code generation against the RFC 6238 SHA-1 vectors."""

    @pytest.mark.parametrize(
        "timestamp,expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1234567890, "005924"),
            (2000000000, "279037"),
        ],
    )
    def test_rfc_vectors(self, timestamp, expected):
        """Six-digit truncations of the published eight-digit values."""
        assert generate_totp(RFC_SECRET, timestamp) == expected

    def test_invalid_secret(self):
        """A secret that is not base32 produces no code."""
        assert generate_totp("not base32!", 59) == ""


def test_backup_codes_shape():
    """Backup codes are XXXX-XXXX and hash the same with or without dashes."""
    codes = generate_backup_codes(5)
    assert len(codes) == 5
    assert all(len(c) == 9 and c[4] == "-" for c in codes)
    assert hash_backup_code(codes[0]) == hash_backup_code(codes[0].replace("-", "").lower())


class TestVerifier:
    """TotpMfaVerifier against the memory store."""

    @pytest.fixture
    def user(self, store):
        return store.create_user("jane@example.com")

    @pytest.fixture
    def verifier(self, store, clock):
        return TotpMfaVerifier(store, clock=clock)

    @pytest.mark.asyncio
    async def test_not_enabled(self, verifier, user):
        """Users without MFA cannot verify."""
        result = await verifier.verify_code(user.id, "123456")
        assert (result.verified, result.error) == (False, "mfa_not_enabled")

    @pytest.mark.asyncio
    async def test_totp_with_skew(self, verifier, store, user, clock):
        """The current, previous and next step are accepted."""
        store.set_user_mfa_config(user.id, RFC_SECRET)
        now = clock().timestamp()

        for offset in (-30, 0, 30):
            code = generate_totp(RFC_SECRET, now + offset)
            assert (await verifier.verify_code(user.id, code)).verified is True

    @pytest.mark.asyncio
    async def test_backup_codes_are_single_use(self, verifier, store, user):
        """A backup code works once and reports how many remain."""
        codes = ["AAAA-1111", "BBBB-2222", "CCCC-3333", "DDDD-4444"]
        store.set_user_mfa_config(user.id, RFC_SECRET, [hash_backup_code(c) for c in codes])

        first = await verifier.verify_code(user.id, "aaaa1111")
        assert first.verified and first.remaining_codes == 3 and first.warning is None

        reused = await verifier.verify_code(user.id, "AAAA-1111")
        assert (reused.verified, reused.error) == (False, "invalid_mfa_code")

        second = await verifier.verify_code(user.id, "BBBB-2222")
        assert second.remaining_codes == 2 and second.warning == "low_backup_codes"

        await verifier.verify_code(user.id, "CCCC-3333")
        last = await verifier.verify_code(user.id, "DDDD-4444")
        assert last.remaining_codes == 0 and last.warning == "last_backup_code_used"

    @pytest.mark.asyncio
    async def test_wrong_and_empty_codes(self, verifier, store, user, clock):
        """Unknown codes are rejected."""
        store.set_user_mfa_config(user.id, RFC_SECRET)
        assert (await verifier.verify_code(user.id, "")).error == "invalid_mfa_code"
        clock.advance(days=365)
        assert (await verifier.verify_code(user.id, "ZZZZ-ZZZZ")).error == "invalid_mfa_code"

    def test_enabling_mfa_marks_user(self, store, user):
        """Saving an MFA config turns on mfa_enabled."""
        store.set_user_mfa_config(user.id, RFC_SECRET)
        assert store.get_user(user.id).mfa_enabled is True
