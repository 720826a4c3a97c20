from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (treated as UTC) and aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=utcnow)
    email_verified: bool = False
    phone_verified: bool = False
    mfa_enabled: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    status: str = "active"
    blocked_until: Optional[datetime] = None
    block_reason: Optional[str] = None
    login_notification_enabled: bool = True

    @property
    def profile_complete(self) -> bool:
        return bool(
            self.first_name
            and self.first_name.strip()
            and self.last_name
            and self.last_name.strip()
        )


@dataclass
class TenantSecurityPolicy:
    tenant_id: str
    require_phone_verification: bool = True
    require_mfa: bool = True
    phone_verification_deadline_days: int = 3
    mfa_deadline_days: int = 7

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TenantSecurityPolicy":
        return cls(
            tenant_id=str(payload["tenant_id"]),
            require_phone_verification=bool(payload.get("require_phone_verification", True)),
            require_mfa=bool(payload.get("require_mfa", True)),
            phone_verification_deadline_days=int(
                payload.get("phone_verification_deadline_days", 3)
            ),
            mfa_deadline_days=int(payload.get("mfa_deadline_days", 7)),
        )


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    device_hash: str
    trusted_until: datetime
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime) -> bool:
        return as_utc(self.trusted_until) > as_utc(now)


@dataclass
class LoginSession:
    """Read model of a session issued by the external session subsystem."""

    id: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    location_city: Optional[str] = None
    location_country: Optional[str] = None
    location_country_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    revoked_at: Optional[datetime] = None


@dataclass
class LoginAlert:
    id: str
    user_id: str
    alert_type: str
    ip_address: Optional[str] = None
    device_info: Dict[str, Any] = field(default_factory=dict)
    location: Dict[str, Any] = field(default_factory=dict)
    is_suspicious: bool = False
    created_at: datetime = field(default_factory=utcnow)
    email_sent_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None


@dataclass
class SecurityAlertLogEntry:
    user_id: str
    alert_type: str
    fingerprint: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserMFAConfig:
    user_id: str
    secret: str
    enabled: bool = True
    backup_code_hashes: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
