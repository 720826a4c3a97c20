"""Two-phase confirmation for irreversible actions.

A challenge lives in the ephemeral cache under
``critical_action_challenge:{user_id}:{action}:{resource_id}`` and moves
through CREATED -> EMAIL_VERIFIED -> (MFA_VERIFIED when the user has MFA) ->
CONSUMED. A missing key means the challenge expired or was already consumed;
callers start over in both cases.

``consume`` is the single authorization instant for the protected action. It
is one atomic check-and-delete in the cache, so a verified challenge can be
spent at most once.
"""

from __future__ import annotations

import hmac
import re
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from trustgate.logging import correlation_scope, get_logger, log_audit_event
from trustgate.schemas import parse_challenge_metadata
from trustgate.service.errors import ValidationError
from trustgate.service.mfa import MfaVerifier
from trustgate.service.notifications import (
    CRITICAL_ACTION_VERIFICATION,
    NotificationDispatcher,
)
from trustgate.storage.models import User, utcnow
from trustgate.storage.redis_cache import CONSUME_OK

logger = get_logger(__name__)

CHALLENGE_KEY_PREFIX = "critical_action_challenge:"
DEFAULT_CHALLENGE_TTL_SECONDS = 10 * 60
_CODE_PATTERN = re.compile(r"^\d{6}$")
CHALLENGE_UNAVAILABLE = "challenge_unavailable"


class CriticalActionType(str, Enum):
    TENANT_DELETION = "tenant_deletion"
    ACCOUNT_DELETION = "account_deletion"
    DATA_EXPORT = "data_export"


@dataclass
class ChallengeData:
    user_id: str
    action: str
    resource_id: str
    email_code: str
    email_sent_to: str
    requires_mfa: bool
    created_at: str
    expires_at: str
    email_verified: bool = False
    mfa_verified: bool = False
    metadata: Optional[Dict[str, Any]] = None

    @property
    def fully_verified(self) -> bool:
        return self.email_verified and (not self.requires_mfa or self.mfa_verified)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ChallengeData":
        return cls(
            user_id=str(payload["user_id"]),
            action=str(payload["action"]),
            resource_id=str(payload["resource_id"]),
            email_code=str(payload["email_code"]),
            email_sent_to=str(payload.get("email_sent_to", "")),
            requires_mfa=bool(payload.get("requires_mfa", False)),
            created_at=str(payload.get("created_at", "")),
            expires_at=str(payload.get("expires_at", "")),
            email_verified=payload.get("email_verified") is True,
            mfa_verified=payload.get("mfa_verified") is True,
            metadata=payload.get("metadata"),
        )


@dataclass
class CreateChallengeResult:
    challenge_id: str
    expires_in: int
    masked_email: str
    requires_mfa: bool
    error: Optional[str] = None


@dataclass
class VerificationResult:
    verified: bool
    error: Optional[str] = None
    remaining_codes: Optional[int] = None
    warning: Optional[str] = None


@dataclass
class ConsumeResult:
    data: Optional[ChallengeData] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.data is not None


@dataclass
class ChallengeStatus:
    exists: bool
    email_verified: bool = False
    mfa_verified: bool = False
    requires_mfa: bool = False
    expires_in: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


class ChallengeCache(Protocol):
    async def set_json(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None: ...

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def delete(self, key: str) -> None: ...

    async def ttl(self, key: str) -> int: ...

    async def set_flag(self, key: str, field: str) -> bool: ...

    async def consume_challenge(self, key: str) -> Tuple[str, Optional[Dict[str, Any]]]: ...


def challenge_key(user_id: str, action: str, resource_id: str) -> str:
    return f"{CHALLENGE_KEY_PREFIX}{user_id}:{action}:{resource_id}"


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def mask_email(email: str) -> str:
    """``jane@example.com`` -> ``j***@example.com``; input without a domain is returned as-is."""
    local, sep, domain = email.partition("@")
    if not sep or not domain:
        return email
    return f"{local[:1]}***@{domain}"


def _coerce_action(action: Union[str, CriticalActionType]) -> CriticalActionType:
    try:
        return CriticalActionType(action)
    except ValueError as exc:
        raise ValidationError(
            f"unsupported critical action: {action}", detail={"action": str(action)}
        ) from exc


def _validate_metadata(
    action: CriticalActionType, metadata: Union[None, BaseModel, Dict[str, Any]]
) -> Optional[Dict[str, Any]]:
    if metadata is None:
        return None
    if isinstance(metadata, BaseModel):
        payload = metadata.model_dump()
    else:
        payload = {"action": action.value, **metadata}
    try:
        parsed = parse_challenge_metadata(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            "invalid challenge metadata", detail={"errors": exc.errors(include_url=False)}
        ) from exc
    if parsed.action != action.value:
        raise ValidationError(
            "challenge metadata does not match action",
            detail={"action": action.value, "metadata_action": parsed.action},
        )
    return parsed.model_dump()


def _log_unavailable(operation: str, exc: Exception, **fields: Any) -> None:
    logger.error(
        "challenge_store_unavailable",
        operation=operation,
        error_type=type(exc).__name__,
        error=str(exc),
        **fields,
    )


class CriticalActionChallengeService:
    def __init__(
        self,
        users: UserLookup,
        cache: ChallengeCache,
        mfa_verifier: MfaVerifier,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.users = users
        self.cache = cache
        self.mfa_verifier = mfa_verifier
        self.dispatcher = dispatcher
        self.ttl_seconds = ttl_seconds
        self._clock = clock or utcnow

    def _user_has_mfa(self, user_id: str) -> bool:
        user = self.users.get_user(user_id)
        return bool(user and user.mfa_enabled)

    async def _load(self, key: str) -> Optional[ChallengeData]:
        payload = await self.cache.get_json(key)
        if payload is None:
            return None
        try:
            return ChallengeData.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("challenge_payload_invalid", key=key)
            return None

    async def create(
        self,
        user_id: str,
        action: Union[str, CriticalActionType],
        resource_id: str,
        email: str,
        metadata: Union[None, BaseModel, Dict[str, Any]] = None,
    ) -> CreateChallengeResult:
        """Start (or restart) a challenge and send its code to ``email``.

        Creating again for the same user, action and resource replaces the
        previous challenge and its code.
        """
        with correlation_scope():
            return await self._create(user_id, action, resource_id, email, metadata)

    async def _create(
        self,
        user_id: str,
        action: Union[str, CriticalActionType],
        resource_id: str,
        email: str,
        metadata: Union[None, BaseModel, Dict[str, Any]],
    ) -> CreateChallengeResult:
        action_type = _coerce_action(action)
        stored_metadata = _validate_metadata(action_type, metadata)
        key = challenge_key(user_id, action_type.value, resource_id)

        try:
            requires_mfa = self._user_has_mfa(user_id)
            code = generate_code()
            now = self._clock()
            data = ChallengeData(
                user_id=user_id,
                action=action_type.value,
                resource_id=resource_id,
                email_code=code,
                email_sent_to=email,
                requires_mfa=requires_mfa,
                created_at=now.isoformat(),
                expires_at=(now + timedelta(seconds=self.ttl_seconds)).isoformat(),
                metadata=stored_metadata,
            )
            await self.cache.set_json(key, data.to_dict(), self.ttl_seconds)
        except Exception as exc:
            logger.error(
                "challenge_create_failed",
                user_id=user_id,
                action=action_type.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return CreateChallengeResult(
                challenge_id="",
                expires_in=0,
                masked_email="",
                requires_mfa=False,
                error="challenge_create_failed",
            )

        if self.dispatcher is not None:
            notification = {
                "code": code,
                "action": action_type.value,
                "expires_in_minutes": self.ttl_seconds // 60,
            }
            if stored_metadata and stored_metadata.get("tenant_name"):
                notification["tenant_name"] = stored_metadata["tenant_name"]
            self.dispatcher.submit(email, CRITICAL_ACTION_VERIFICATION, notification)

        log_audit_event(
            "critical_action_challenge_created",
            user_id=user_id,
            resource_type=action_type.value,
            resource_id=resource_id,
            logger=logger,
            requires_mfa=requires_mfa,
        )
        return CreateChallengeResult(
            challenge_id=key,
            expires_in=self.ttl_seconds,
            masked_email=mask_email(email),
            requires_mfa=requires_mfa,
        )

    async def get_email_code(
        self, user_id: str, action: Union[str, CriticalActionType], resource_id: str
    ) -> Optional[str]:
        """Raw code of a live challenge, for delivery paths outside the dispatcher."""
        key = challenge_key(user_id, _coerce_action(action).value, resource_id)
        try:
            data = await self._load(key)
        except Exception as exc:
            _log_unavailable("get_email_code", exc, user_id=user_id)
            return None
        return data.email_code if data else None

    async def verify_email_code(
        self,
        user_id: str,
        action: Union[str, CriticalActionType],
        resource_id: str,
        code: str,
    ) -> VerificationResult:
        key = challenge_key(user_id, _coerce_action(action).value, resource_id)
        try:
            data = await self._load(key)
            if data is None:
                return VerificationResult(verified=False, error="challenge_expired")
            if data.email_verified:
                return VerificationResult(verified=True)

            candidate = (code or "").strip()
            if not _CODE_PATTERN.match(candidate):
                return VerificationResult(verified=False, error="invalid_code_format")
            if not hmac.compare_digest(candidate, data.email_code):
                logger.info("challenge_email_code_rejected", user_id=user_id, action=data.action)
                return VerificationResult(verified=False, error="invalid_code")

            if not await self.cache.set_flag(key, "email_verified"):
                # Expired between the read and the update
                return VerificationResult(verified=False, error="challenge_expired")
        except Exception as exc:
            _log_unavailable("verify_email_code", exc, user_id=user_id)
            return VerificationResult(verified=False, error=CHALLENGE_UNAVAILABLE)
        logger.info("challenge_email_verified", user_id=user_id, action=data.action)
        return VerificationResult(verified=True)

    async def verify_mfa_code(
        self,
        user_id: str,
        action: Union[str, CriticalActionType],
        resource_id: str,
        code: str,
    ) -> VerificationResult:
        """Check an authenticator or backup code against a live challenge.

        The verifier may spend a single-use backup code, so the challenge's
        TTL is re-read just before calling it. A challenge that expires after
        that read and before the flag update still burns the backup code.
        """
        key = challenge_key(user_id, _coerce_action(action).value, resource_id)
        try:
            data = await self._load(key)
            if data is None:
                return VerificationResult(verified=False, error="challenge_expired")
            if not data.requires_mfa or data.mfa_verified:
                return VerificationResult(verified=True)

            remaining = await self.cache.ttl(key)
            if remaining == -2 or remaining == 0:
                return VerificationResult(verified=False, error="challenge_expired")

            result = await self.mfa_verifier.verify_code(user_id, code)
            if not result.verified:
                return VerificationResult(verified=False, error=result.error or "invalid_mfa_code")

            if not await self.cache.set_flag(key, "mfa_verified"):
                return VerificationResult(verified=False, error="challenge_expired")
        except Exception as exc:
            _log_unavailable("verify_mfa_code", exc, user_id=user_id)
            return VerificationResult(verified=False, error=CHALLENGE_UNAVAILABLE)
        logger.info("challenge_mfa_verified", user_id=user_id, action=data.action)
        return VerificationResult(
            verified=True, remaining_codes=result.remaining_codes, warning=result.warning
        )

    async def status(
        self, user_id: str, action: Union[str, CriticalActionType], resource_id: str
    ) -> ChallengeStatus:
        key = challenge_key(user_id, _coerce_action(action).value, resource_id)
        try:
            data = await self._load(key)
            if data is None:
                return ChallengeStatus(exists=False)
            remaining = await self.cache.ttl(key)
        except Exception as exc:
            _log_unavailable("status", exc, user_id=user_id)
            return ChallengeStatus(exists=False, error=CHALLENGE_UNAVAILABLE)
        return ChallengeStatus(
            exists=True,
            email_verified=data.email_verified,
            mfa_verified=data.mfa_verified,
            requires_mfa=data.requires_mfa,
            expires_in=remaining if remaining >= 0 else None,
            metadata=dict(data.metadata or {}),
        )

    async def is_fully_verified(
        self, user_id: str, action: Union[str, CriticalActionType], resource_id: str
    ) -> bool:
        key = challenge_key(user_id, _coerce_action(action).value, resource_id)
        try:
            data = await self._load(key)
        except Exception as exc:
            _log_unavailable("is_fully_verified", exc, user_id=user_id)
            return False
        return bool(data and data.fully_verified)

    async def consume(
        self, user_id: str, action: Union[str, CriticalActionType], resource_id: str
    ) -> ConsumeResult:
        action_type = _coerce_action(action)
        key = challenge_key(user_id, action_type.value, resource_id)
        try:
            outcome, payload = await self.cache.consume_challenge(key)
        except Exception as exc:
            _log_unavailable("consume", exc, user_id=user_id)
            return ConsumeResult(error=CHALLENGE_UNAVAILABLE)
        if outcome != CONSUME_OK:
            return ConsumeResult(error=outcome)
        try:
            data = ChallengeData.from_dict(payload or {})
        except (KeyError, TypeError, ValueError):
            logger.warning("challenge_payload_invalid", key=key)
            return ConsumeResult(error="challenge_invalid")

        log_audit_event(
            "critical_action_challenge_consumed",
            user_id=user_id,
            resource_type=action_type.value,
            resource_id=resource_id,
            logger=logger,
        )
        return ConsumeResult(data=data)

    async def delete(
        self, user_id: str, action: Union[str, CriticalActionType], resource_id: str
    ) -> bool:
        """Abandon a challenge. False when the cache could not be reached."""
        key = challenge_key(user_id, _coerce_action(action).value, resource_id)
        try:
            await self.cache.delete(key)
        except Exception as exc:
            _log_unavailable("delete", exc, user_id=user_id)
            return False
        return True
