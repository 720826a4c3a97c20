from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
import struct
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from trustgate.logging import get_logger
from trustgate.storage.models import UserMFAConfig, utcnow

logger = get_logger(__name__)

_TOTP_PATTERN = re.compile(r"^\d{6}$")
LOW_BACKUP_CODES_THRESHOLD = 2


@dataclass
class MfaResult:
    verified: bool
    error: Optional[str] = None
    remaining_codes: Optional[int] = None
    warning: Optional[str] = None


class MfaVerifier(Protocol):
    async def verify_code(self, user_id: str, code: str) -> MfaResult: ...


class MfaConfigStore(Protocol):
    def get_user_mfa_config(self, user_id: str) -> Optional[UserMFAConfig]: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]: ...


def normalize_backup_code(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()


def generate_backup_codes(count: int = 10) -> List[str]:
    """Human-friendly single-use codes (XXXX-XXXX); store only their hashes."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def generate_totp(secret: str, timestamp: float, *, interval: int = 30, digits: int = 6) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = struct.pack(">Q", int(timestamp // interval))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


class TotpMfaVerifier:
    """TOTP (RFC 6238) verifier with single-use backup codes as fallback."""

    def __init__(
        self,
        store: MfaConfigStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        interval: int = 30,
        skew_steps: int = 1,
    ) -> None:
        self.store = store
        self._clock = clock or utcnow
        self.interval = interval
        self.skew_steps = skew_steps

    def _verify_totp(self, secret: str, code: str) -> bool:
        now = self._clock().timestamp()
        for offset in range(-self.skew_steps, self.skew_steps + 1):
            generated = generate_totp(secret, now + offset * self.interval, interval=self.interval)
            # Constant-time comparison
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    async def verify_code(self, user_id: str, code: str) -> MfaResult:
        cfg = self.store.get_user_mfa_config(user_id)
        if not cfg or not cfg.enabled:
            return MfaResult(verified=False, error="mfa_not_enabled")

        candidate = (code or "").strip().replace(" ", "")
        if not candidate:
            return MfaResult(verified=False, error="invalid_mfa_code")
        if _TOTP_PATTERN.match(candidate) and self._verify_totp(cfg.secret, candidate):
            return MfaResult(verified=True)

        remaining = self.store.consume_backup_code(user_id, hash_backup_code(candidate))
        if remaining is None:
            return MfaResult(verified=False, error="invalid_mfa_code")

        warning = None
        if remaining == 0:
            warning = "last_backup_code_used"
        elif remaining <= LOW_BACKUP_CODES_THRESHOLD:
            warning = "low_backup_codes"
        logger.info("mfa_backup_code_used", user_id=user_id, remaining_codes=remaining)
        return MfaResult(verified=True, remaining_codes=remaining, warning=warning)
