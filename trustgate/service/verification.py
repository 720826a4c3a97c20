"""Verification status for a user within a tenant.

Requirements, in priority order:
1. Profile (first and last name) - required immediately
2. Email verification - required immediately
3. Phone verification - required within the tenant's phone deadline (default 3 days)
4. MFA - required within the tenant's MFA deadline (default 7 days)

A deadline of ``D`` days is passed once the account is ``D`` whole days old
(``account_age_days >= D``). Before that the factor is reported in
``deadlines`` with the days remaining, which is therefore always at least 1.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from trustgate.config import Settings
from trustgate.logging import get_logger
from trustgate.service.errors import ForbiddenError, ValidationError
from trustgate.storage.models import TenantSecurityPolicy, User, as_utc, utcnow

logger = get_logger(__name__)

TENANT_CONFIG_KEY_PREFIX = "tenant_config:"
_ONE_DAY = timedelta(days=1)


@dataclass
class VerificationStatus:
    complete: bool = True
    missing: List[str] = field(default_factory=list)
    deadlines: Dict[str, int] = field(default_factory=dict)
    next_required_step: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complete": self.complete,
            "missing": list(self.missing),
            "deadlines": dict(self.deadlines),
            "next_required_step": self.next_required_step,
        }


@dataclass
class VerificationDetails:
    profile_complete: bool
    first_name: Optional[str]
    last_name: Optional[str]
    email_verified: bool
    email: str
    phone_verified: bool
    phone: Optional[str]
    phone_required: bool
    phone_days_remaining: Optional[int]
    mfa_enabled: bool
    mfa_required: bool
    mfa_days_remaining: Optional[int]
    next_required_step: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": {
                "complete": self.profile_complete,
                "first_name": self.first_name,
                "last_name": self.last_name,
            },
            "email": {"verified": self.email_verified, "address": self.email},
            "phone": {
                "verified": self.phone_verified,
                "number": self.phone,
                "required": self.phone_required,
                "deadline_days_remaining": self.phone_days_remaining,
            },
            "mfa": {
                "enabled": self.mfa_enabled,
                "required": self.mfa_required,
                "deadline_days_remaining": self.mfa_days_remaining,
            },
            "next_required_step": self.next_required_step,
        }


@dataclass
class AccessDecision:
    blocked: bool
    reason: Optional[str] = None
    redirect_url: Optional[str] = None


def account_age_days(created_at: datetime, now: datetime) -> int:
    """Whole days elapsed since ``created_at`` (floored)."""
    return (as_utc(now) - as_utc(created_at)) // _ONE_DAY


def deadline_passed(age_days: int, deadline_days: int) -> bool:
    return age_days >= deadline_days


def default_policy(tenant_id: str, settings: Optional[Settings] = None) -> TenantSecurityPolicy:
    """Conservative policy used when a tenant has none configured."""
    if settings is None:
        return TenantSecurityPolicy(tenant_id=tenant_id)
    return TenantSecurityPolicy(
        tenant_id=tenant_id,
        require_phone_verification=settings.default_require_phone_verification,
        require_mfa=settings.default_require_mfa,
        phone_verification_deadline_days=settings.default_phone_deadline_days,
        mfa_deadline_days=settings.default_mfa_deadline_days,
    )


def _mark_missing(status: VerificationStatus, factor: str) -> None:
    status.complete = False
    status.missing.append(factor)
    if status.next_required_step is None:
        status.next_required_step = factor


def evaluate(
    user: User, policy: TenantSecurityPolicy, now: Optional[datetime] = None
) -> VerificationStatus:
    """Compute which assurance factors ``user`` still owes under ``policy``."""
    age = account_age_days(user.created_at, now or utcnow())
    status = VerificationStatus()

    if not user.profile_complete:
        _mark_missing(status, "profile")

    if not user.email_verified:
        _mark_missing(status, "email")

    if policy.require_phone_verification and not user.phone_verified:
        deadline = policy.phone_verification_deadline_days
        if deadline_passed(age, deadline):
            _mark_missing(status, "phone")
        else:
            status.deadlines["phone"] = deadline - age

    if policy.require_mfa and not user.mfa_enabled:
        deadline = policy.mfa_deadline_days
        if deadline_passed(age, deadline):
            _mark_missing(status, "mfa")
        else:
            status.deadlines["mfa"] = deadline - age

    return status


def build_details(
    user: User, policy: TenantSecurityPolicy, now: Optional[datetime] = None
) -> VerificationDetails:
    """Per-factor breakdown for UI display, consistent with ``evaluate``."""
    status = evaluate(user, policy, now)
    phone_required = policy.require_phone_verification
    mfa_required = policy.require_mfa
    return VerificationDetails(
        profile_complete=user.profile_complete,
        first_name=user.first_name or None,
        last_name=user.last_name or None,
        email_verified=user.email_verified,
        email=user.email,
        phone_verified=user.phone_verified,
        phone=user.phone or None,
        phone_required=phone_required,
        phone_days_remaining=status.deadlines.get("phone"),
        mfa_enabled=user.mfa_enabled,
        mfa_required=mfa_required,
        mfa_days_remaining=status.deadlines.get("mfa"),
        next_required_step=status.next_required_step,
    )


class PolicyRepository(Protocol):
    def get_tenant_policy(self, tenant_id: str) -> Optional[TenantSecurityPolicy]: ...

    def save_tenant_policy(self, policy: TenantSecurityPolicy) -> TenantSecurityPolicy: ...


class JsonCache(Protocol):
    async def get_json(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def set_json(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class PolicyCache:
    """Read-through cache of tenant security policies.

    Only policies that exist in the repository are cached; tenants without one
    get ``default_policy`` on every call.
    """

    def __init__(
        self,
        repository: PolicyRepository,
        cache: JsonCache,
        *,
        ttl_seconds: int = 300,
        settings: Optional[Settings] = None,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.settings = settings

    @staticmethod
    def _key(tenant_id: str) -> str:
        return f"{TENANT_CONFIG_KEY_PREFIX}{tenant_id}"

    async def get(self, tenant_id: str) -> TenantSecurityPolicy:
        try:
            cached = await self.cache.get_json(self._key(tenant_id))
        except Exception as exc:
            logger.warning("tenant_policy_cache_read_failed", tenant_id=tenant_id, error=str(exc))
            cached = None
        if cached:
            try:
                return TenantSecurityPolicy.from_dict(cached)
            except (KeyError, TypeError, ValueError):
                logger.warning("tenant_policy_cache_corrupted", tenant_id=tenant_id)

        policy = self.repository.get_tenant_policy(tenant_id)
        if policy is None:
            return default_policy(tenant_id, self.settings)

        try:
            await self.cache.set_json(self._key(tenant_id), policy.to_dict(), self.ttl_seconds)
        except Exception as exc:
            logger.warning("tenant_policy_cache_write_failed", tenant_id=tenant_id, error=str(exc))
        return policy

    async def invalidate(self, tenant_id: str) -> None:
        await self.cache.delete(self._key(tenant_id))


_POLICY_FIELDS = {
    "require_phone_verification",
    "require_mfa",
    "phone_verification_deadline_days",
    "mfa_deadline_days",
}

_STEP_ERRORS = {
    "email": ("email_not_verified", "Email verification required", "/verify-email"),
    "phone": ("phone_not_verified", "Phone verification required", "/complete-profile"),
    "mfa": ("mfa_not_enabled", "MFA setup required", "/complete-profile"),
}


class VerificationService:
    """Tenant-aware verification checks built on ``evaluate``."""

    def __init__(
        self,
        policies: PolicyCache,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.policies = policies
        self._clock = clock or utcnow

    async def check_status(self, user: User, tenant_id: str) -> VerificationStatus:
        policy = await self.policies.get(tenant_id)
        return evaluate(user, policy, self._clock())

    async def get_details(self, user: User, tenant_id: str) -> VerificationDetails:
        policy = await self.policies.get(tenant_id)
        return build_details(user, policy, self._clock())

    async def get_access_block_reason(self, user: User, tenant_id: str) -> AccessDecision:
        """Return the first reason the user may not access tenant resources."""
        now = self._clock()
        if user.blocked_until and as_utc(user.blocked_until) > now:
            return AccessDecision(
                blocked=True, reason=user.block_reason or "Account temporarily blocked"
            )
        if user.status == "suspended":
            return AccessDecision(
                blocked=True, reason="Account suspended. Please contact support."
            )
        if user.status == "deleted":
            return AccessDecision(blocked=True, reason="Account deleted.")

        status = await self.check_status(user, tenant_id)
        if not status.complete:
            return AccessDecision(
                blocked=True,
                reason=f"Please complete verification: {', '.join(status.missing)}",
                redirect_url="/complete-profile",
            )
        return AccessDecision(blocked=False)

    def require_step(self, user: User, step: str) -> None:
        """Raise ForbiddenError unless ``user`` has completed ``step``."""
        if step not in _STEP_ERRORS:
            raise ValidationError(f"unknown verification step: {step}")
        satisfied = {
            "email": user.email_verified,
            "phone": user.phone_verified,
            "mfa": user.mfa_enabled,
        }[step]
        if not satisfied:
            error_code, message, redirect = _STEP_ERRORS[step]
            raise ForbiddenError(
                message, error_code=error_code, detail={"redirect_url": redirect}
            )

    async def update_policy(self, tenant_id: str, **changes: Any) -> TenantSecurityPolicy:
        """Apply an admin edit to the tenant policy and drop the cached copy."""
        unknown = set(changes) - _POLICY_FIELDS
        if unknown:
            raise ValidationError(
                "unknown policy fields", detail={"fields": sorted(unknown)}
            )
        for name in ("phone_verification_deadline_days", "mfa_deadline_days"):
            if name in changes and int(changes[name]) < 0:
                raise ValidationError(f"{name} cannot be negative")

        repository = self.policies.repository
        current = repository.get_tenant_policy(tenant_id) or default_policy(
            tenant_id, self.policies.settings
        )
        updated = repository.save_tenant_policy(replace(current, **changes))
        try:
            await self.policies.invalidate(tenant_id)
        except Exception as exc:
            # Stale entry ages out with the cache TTL
            logger.error(
                "tenant_policy_invalidate_failed",
                tenant_id=tenant_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        logger.info("tenant_policy_updated", tenant_id=tenant_id, fields=sorted(changes))
        return updated

    async def get_policy(self, tenant_id: str) -> TenantSecurityPolicy:
        return await self.policies.get(tenant_id)
