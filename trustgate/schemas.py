from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

MAX_REASON_LENGTH = 500


class TenantDeletionMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["tenant_deletion"] = "tenant_deletion"
    tenant_name: str = Field(..., min_length=1, max_length=255)


class AccountDeletionMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["account_deletion"] = "account_deletion"
    reason: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)


class DataExportMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["data_export"] = "data_export"
    export_format: Literal["json", "csv", "zip"] = "json"
    scope: Literal["account", "tenant"] = "account"


ChallengeMetadata = Annotated[
    Union[TenantDeletionMetadata, AccountDeletionMetadata, DataExportMetadata],
    Field(discriminator="action"),
]

challenge_metadata_adapter: TypeAdapter = TypeAdapter(ChallengeMetadata)


def parse_challenge_metadata(payload: Dict[str, Any]):
    """Validate a raw metadata dict (must carry ``action``) into its model."""
    return challenge_metadata_adapter.validate_python(payload)


class VerificationStatusResponse(BaseModel):
    complete: bool
    missing: List[Literal["profile", "email", "phone", "mfa"]] = Field(default_factory=list)
    deadlines: Dict[Literal["phone", "mfa"], int] = Field(default_factory=dict)
    next_required_step: Optional[Literal["profile", "email", "phone", "mfa"]] = None


class ProfileDetails(BaseModel):
    complete: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class EmailDetails(BaseModel):
    verified: bool
    address: str


class PhoneDetails(BaseModel):
    verified: bool
    number: Optional[str] = None
    required: bool
    deadline_days_remaining: Optional[int] = None


class MfaDetails(BaseModel):
    enabled: bool
    required: bool
    deadline_days_remaining: Optional[int] = None


class VerificationDetailsResponse(BaseModel):
    profile: ProfileDetails
    email: EmailDetails
    phone: PhoneDetails
    mfa: MfaDetails
    next_required_step: Optional[str] = None


class ChallengeCreatedResponse(BaseModel):
    challenge_id: str
    expires_in: int
    masked_email: str
    requires_mfa: bool


class ChallengeVerificationResponse(BaseModel):
    verified: bool
    error: Optional[str] = None
    remaining_codes: Optional[int] = None
    warning: Optional[str] = None
    # Filled in by the rate limiter in front of the engine
    remaining_attempts: Optional[int] = None


class ChallengeStatusResponse(BaseModel):
    exists: bool
    email_verified: bool = False
    mfa_verified: bool = False
    requires_mfa: bool = False
    expires_in: Optional[int] = None
    error: Optional[str] = None


class VerifyCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)

    @field_validator("code")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class TrustedDeviceResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    trusted_until: datetime
    created_at: datetime


class TrustedDeviceListResponse(BaseModel):
    devices: List[TrustedDeviceResponse] = Field(default_factory=list)


class LoginAlertResponse(BaseModel):
    id: str
    alert_type: Literal["new_device", "new_location", "new_browser"]
    ip_address: Optional[str] = None
    device_info: Dict[str, Any] = Field(default_factory=dict)
    location: Dict[str, Any] = Field(default_factory=dict)
    is_suspicious: bool = False
    created_at: datetime
    acknowledged_at: Optional[datetime] = None


class LoginAlertListResponse(BaseModel):
    alerts: List[LoginAlertResponse] = Field(default_factory=list)
