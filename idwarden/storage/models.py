from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ChallengePurpose(str, Enum):
    LOGIN = "login"
    REGISTER = "register"
    RESET_PASSWORD = "reset_password"
    CHANGE_EMAIL = "change_email"
    CHANGE_PHONE = "change_phone"
    BIND_EMAIL = "bind_email"
    BIND_PHONE = "bind_phone"


class AuditEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    REGISTER_SUCCESS = "register_success"
    REGISTER_FAILED = "register_failed"
    VERIFICATION_CODE_SENT = "verification_code_sent"
    VERIFICATION_CODE_FAILED = "verification_code_failed"
    VERIFICATION_CODE_SUCCESS = "verification_code_success"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"
    EMAIL_CHANGE = "email_change"
    PHONE_CHANGE = "phone_change"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    REFRESH_TOKEN_ISSUED = "refresh_token_issued"
    REFRESH_TOKEN_USED = "refresh_token_used"
    REFRESH_TOKEN_REVOKED = "refresh_token_revoked"
    LOGOUT = "logout"
    PERMISSION_DENIED = "permission_denied"
    ACCESS_GRANTED = "access_granted"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REMOVED = "role_removed"
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"


ROLE_CHANGE_EVENTS = (
    AuditEventType.ROLE_ASSIGNED,
    AuditEventType.ROLE_REMOVED,
    AuditEventType.ROLE_CREATED,
    AuditEventType.ROLE_UPDATED,
    AuditEventType.ROLE_DELETED,
)


@dataclass(frozen=True)
class RequestMeta:
    """Caller metadata captured at the transport boundary."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Credential:
    id: str
    username: str
    password_hash: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    phone_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_available(self) -> bool:
        """Active and not soft-deleted."""
        return self.is_active and self.deleted_at is None


@dataclass
class RefreshRecord:
    id: str
    credential_id: str
    token_hash: str
    expires_at: datetime
    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        credential_id: str,
        token_hash: str,
        ttl: timedelta,
        *,
        device_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> "RefreshRecord":
        now = utcnow()
        return cls(
            id=new_id(),
            credential_id=credential_id,
            token_hash=token_hash,
            expires_at=now + ttl,
            device_id=device_id,
            user_agent=user_agent,
            ip_address=ip_address,
            last_used_at=now,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)


@dataclass
class Challenge:
    id: str
    target: str
    purpose: ChallengePurpose
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    is_used: bool = False
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditRecord:
    id: str
    event_type: AuditEventType
    success: bool = True
    credential_id: Optional[str] = None
    target: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
