from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from idwarden.storage.models import AuditEventType, ChallengePurpose

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _strip_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class _ContactRequest(BaseModel):
    """Body carrying exactly one of email or phone."""

    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email", "phone")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return _strip_optional(value)

    @model_validator(mode="after")
    def _one_contact(self):
        if bool(self.email) == bool(self.phone):
            raise ValueError("provide exactly one of email or phone")
        return self


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., min_length=3, max_length=20)
    password: str = Field(..., min_length=1, max_length=256)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)
    verification_code: Optional[str] = Field(default=None, max_length=16)
    device_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email", "phone", "verification_code", "device_id")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return _strip_optional(value)

    @model_validator(mode="after")
    def _has_contact(self):
        if not self.email and not self.phone:
            raise ValueError("email or phone is required")
        return self


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)
    password: Optional[str] = Field(default=None, max_length=256)
    verification_code: Optional[str] = Field(default=None, max_length=16)
    device_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username", "email", "phone", "verification_code", "device_id")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return _strip_optional(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)
    device_id: Optional[str] = Field(default=None, max_length=128)


class LogoutRequest(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=128)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=256)


class PasswordResetRequest(_ContactRequest):
    verification_code: str = Field(..., min_length=1, max_length=16)
    new_password: str = Field(..., min_length=1, max_length=256)


class SendCodeRequest(_ContactRequest):
    purpose: ChallengePurpose


class ContactChangeRequest(_ContactRequest):
    verification_code: str = Field(..., min_length=1, max_length=16)


class CredentialResponse(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool
    email_verified: bool
    phone_verified: bool
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: CredentialResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    roles: List[str] = Field(default_factory=list)


class CodeSentResponse(BaseModel):
    target: str
    purpose: ChallengePurpose
    expires_at: datetime
    retry_after: int


class SessionResponse(BaseModel):
    id: str
    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: datetime


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)
    is_active: bool = True


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)
    is_active: Optional[bool] = None


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class RoleUsageResponse(BaseModel):
    role: RoleResponse
    member_count: int


class RoleAssignmentRequest(BaseModel):
    roles: List[str] = Field(..., min_length=1, max_length=32)


class RoleAssignmentResponse(BaseModel):
    credential_id: str
    changed: List[str]
    roles: List[str]


class AuditRecordResponse(BaseModel):
    id: str
    event_type: AuditEventType
    success: bool
    credential_id: Optional[str] = None
    target: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: datetime


class AuditStatisticsResponse(BaseModel):
    window_days: int
    permission_denied_count: int
    access_granted_count: int
    role_changes_count: int
    top_denied_targets: List[dict]
