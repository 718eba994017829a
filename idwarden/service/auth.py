from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from idwarden.logging import get_logger
from idwarden.service.audit import AuditEmitter, AuditEvent
from idwarden.service.challenges import ChallengeReceipt, ChallengeService
from idwarden.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from idwarden.service.hashing import SecretHasher
from idwarden.service.roles import RoleRegistry
from idwarden.service.session_tokens import SessionClaims, SessionTokenCodec
from idwarden.service.targets import normalize_email, normalize_phone, normalize_target, validate_username
from idwarden.service.tokens import TokenLedger
from idwarden.storage.errors import ConstraintViolation
from idwarden.storage.models import (
    AuditEventType,
    ChallengePurpose,
    Credential,
    RefreshRecord,
    RequestMeta,
)

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "invalid credentials"

_BIND_PURPOSE = {"email": ChallengePurpose.BIND_EMAIL, "phone": ChallengePurpose.BIND_PHONE}
_CHANGE_PURPOSE = {"email": ChallengePurpose.CHANGE_EMAIL, "phone": ChallengePurpose.CHANGE_PHONE}
_CHANGE_EVENT = {"email": AuditEventType.EMAIL_CHANGE, "phone": AuditEventType.PHONE_CHANGE}
# purposes that must target a contact no other credential holds
_CLAIMING_PURPOSES = {
    ChallengePurpose.REGISTER,
    ChallengePurpose.BIND_EMAIL,
    ChallengePurpose.BIND_PHONE,
    ChallengePurpose.CHANGE_EMAIL,
    ChallengePurpose.CHANGE_PHONE,
}


class CredentialStore(Protocol):
    def create_credential(
        self,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        email_verified: bool = False,
        phone_verified: bool = False,
        is_active: bool = True,
    ) -> Credential:
        ...

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        ...

    def get_credential_by_username(self, username: str) -> Optional[Credential]:
        ...

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        ...

    def get_credential_by_phone(self, phone: str) -> Optional[Credential]:
        ...

    def update_password(self, credential_id: str, password_hash: str) -> bool:
        ...

    def set_credential_active(self, credential_id: str, is_active: bool) -> Optional[Credential]:
        ...

    def update_contact(
        self, credential_id: str, field: str, value: str, *, verified: bool = False
    ) -> Optional[Credential]:
        ...

    def record_login(self, credential_id: str, ip_address: Optional[str]) -> None:
        ...


@dataclass
class AuthResult:
    credential: Credential
    access_token: str
    refresh_token: str
    expires_in: int
    roles: List[str] = field(default_factory=list)
    token_type: str = "bearer"


class AuthOrchestrator:
    """Composes credentials, challenges, refresh rotation and roles into auth flows."""

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        codec: SessionTokenCodec,
        ledger: TokenLedger,
        challenges: ChallengeService,
        roles: RoleRegistry,
        audit: AuditEmitter,
        *,
        allow_signup: bool = True,
        default_country_code: str = "86",
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.ledger = ledger
        self.challenges = challenges
        self.roles = roles
        self.audit = audit
        self.allow_signup = allow_signup
        self.default_country_code = default_country_code
        self._dummy_password_hash: Optional[str] = None

    def _emit(
        self,
        event_type: AuditEventType,
        *,
        success: bool = True,
        credential_id: Optional[str] = None,
        target: Optional[str] = None,
        device_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        self.audit.record(
            AuditEvent(
                event_type,
                success=success,
                credential_id=credential_id,
                target=target,
                device_id=device_id,
                meta=meta,
                metadata=metadata or {},
                error_message=error_message,
            )
        )

    def _issue_tokens(
        self,
        credential: Credential,
        *,
        device_id: Optional[str],
        meta: RequestMeta,
        refresh_secret: Optional[str] = None,
    ) -> AuthResult:
        roles = self.roles.role_names_for(credential.id)
        access_token = self.codec.mint(
            subject=credential.id,
            username=credential.username,
            roles=roles,
            email=credential.email,
            phone=credential.phone,
        )
        if refresh_secret is None:
            refresh_secret = self.ledger.issue(credential.id, device_id=device_id, meta=meta).secret
        return AuthResult(
            credential=credential,
            access_token=access_token,
            refresh_token=refresh_secret,
            expires_in=int(self.codec.ttl.total_seconds()),
            roles=sorted(roles),
        )

    @staticmethod
    def _require_password(password: Optional[str], field_name: str = "password") -> str:
        if not password:
            raise ValidationError(f"{field_name} is required", detail={"field": field_name})
        return password

    async def register(
        self,
        username: str,
        password: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        verification_code: Optional[str] = None,
        device_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> AuthResult:
        meta = meta or RequestMeta()
        if not self.allow_signup:
            self._emit(
                AuditEventType.REGISTER_FAILED,
                success=False,
                meta=meta,
                metadata={"reason": "signup_disabled"},
                error_message="signup is disabled",
            )
            raise AuthorizationError("signup is disabled")
        try:
            username = validate_username(username)
            self._require_password(password)
            if not email and not phone:
                raise ValidationError("email or phone is required", detail={"field": "email"})
            norm_email = normalize_email(email) if email else None
            norm_phone = normalize_phone(phone, self.default_country_code) if phone else None
        except ValidationError as exc:
            self._emit(
                AuditEventType.REGISTER_FAILED,
                success=False,
                meta=meta,
                metadata={**exc.detail, "reason": "invalid_input"},
                error_message=exc.message,
            )
            raise
        target = norm_phone or norm_email

        email_verified = phone_verified = False
        if verification_code:
            try:
                await self.challenges.verify(
                    target, verification_code, ChallengePurpose.REGISTER, meta
                )
            except ValidationError as exc:
                self._emit(
                    AuditEventType.REGISTER_FAILED,
                    success=False,
                    target=target,
                    meta=meta,
                    metadata={"reason": "verification_failed"},
                    error_message=exc.message,
                )
                raise
            phone_verified = norm_phone is not None
            email_verified = norm_phone is None

        try:
            credential = self.store.create_credential(
                username,
                self.hasher.hash_password(password),
                email=norm_email,
                phone=norm_phone,
                email_verified=email_verified,
                phone_verified=phone_verified,
            )
        except ConstraintViolation as exc:
            field_name = exc.field or "username"
            self._emit(
                AuditEventType.REGISTER_FAILED,
                success=False,
                target=target,
                meta=meta,
                metadata={"reason": "duplicate", "field": field_name},
                error_message=exc.message,
            )
            raise ConflictError(f"{field_name} already registered", detail={"field": field_name}) from exc

        if self.roles.default_role:
            try:
                self.roles.assign(credential.id, [self.roles.default_role], meta=meta)
            except NotFoundError:
                logger.error("default_role_missing", role=self.roles.default_role)

        self._emit(
            AuditEventType.REGISTER_SUCCESS,
            credential_id=credential.id,
            target=target,
            device_id=device_id,
            meta=meta,
            metadata={"verified": bool(verification_code)},
        )
        logger.info("credential_registered", credential_id=credential.id)
        return self._issue_tokens(credential, device_id=device_id, meta=meta)

    def _login_failed(
        self,
        *,
        reason: str,
        target: Optional[str],
        credential_id: Optional[str],
        device_id: Optional[str],
        meta: RequestMeta,
    ) -> AuthenticationError:
        logger.warning("login_failed", reason=reason, credential_id=credential_id)
        self._emit(
            AuditEventType.LOGIN_FAILED,
            success=False,
            credential_id=credential_id,
            target=target,
            device_id=device_id,
            meta=meta,
            metadata={"reason": reason},
            error_message=_INVALID_CREDENTIALS,
        )
        return AuthenticationError(_INVALID_CREDENTIALS)

    def _lookup_for_login(
        self,
        *,
        email: Optional[str],
        phone: Optional[str],
        username: Optional[str],
    ) -> tuple[Optional[str], Optional[Credential]]:
        supplied = [v for v in (email, phone, username) if v]
        if len(supplied) != 1:
            raise ValidationError("provide exactly one of username, email or phone")
        if username:
            name = username.strip()
            return name, self.store.get_credential_by_username(name)
        if email:
            target = normalize_email(email)
            return target, self.store.get_credential_by_email(target)
        target = normalize_phone(phone, self.default_country_code)
        return target, self.store.get_credential_by_phone(target)

    async def login(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        verification_code: Optional[str] = None,
        device_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> AuthResult:
        meta = meta or RequestMeta()
        if bool(password) == bool(verification_code):
            raise ValidationError("provide either a password or a verification code")
        if verification_code and not phone:
            raise ValidationError("verification code login requires a phone number")

        target, credential = self._lookup_for_login(email=email, phone=phone, username=username)
        failure = dict(target=target, device_id=device_id, meta=meta)
        if credential is None:
            if password:
                # same argon2 cost as a real account so timing does not reveal existence
                if self._dummy_password_hash is None:
                    self._dummy_password_hash = self.hasher.hash_password(secrets.token_urlsafe(16))
                self.hasher.verify_password(self._dummy_password_hash, password)
            raise self._login_failed(reason="unknown", credential_id=None, **failure)

        if password:
            if not self.hasher.verify_password(credential.password_hash, password):
                raise self._login_failed(reason="bad_password", credential_id=credential.id, **failure)
            method = "password"
        else:
            try:
                await self.challenges.verify(target, verification_code, ChallengePurpose.LOGIN, meta)
            except ValidationError:
                raise self._login_failed(reason="bad_code", credential_id=credential.id, **failure) from None
            method = "code"

        if not credential.is_available:
            raise self._login_failed(reason="inactive", credential_id=credential.id, **failure)

        self.store.record_login(credential.id, meta.ip_address)
        self._emit(
            AuditEventType.LOGIN_SUCCESS,
            credential_id=credential.id,
            target=target,
            device_id=device_id,
            meta=meta,
            metadata={"method": method},
        )
        return self._issue_tokens(credential, device_id=device_id, meta=meta)

    async def refresh(
        self,
        refresh_token: str,
        *,
        device_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> AuthResult:
        meta = meta or RequestMeta()
        issued = self.ledger.rotate(refresh_token, device_id=device_id, meta=meta)
        credential = self.store.get_credential(issued.record.credential_id)
        if credential is None or not credential.is_available:
            self.ledger.revoke_all_for_subject(issued.record.credential_id)
            logger.warning("refresh_for_unavailable_credential", credential_id=issued.record.credential_id)
            raise AuthenticationError("invalid or expired refresh token")
        return self._issue_tokens(
            credential,
            device_id=issued.record.device_id,
            meta=meta,
            refresh_secret=issued.secret,
        )

    def logout(
        self,
        credential_id: str,
        *,
        device_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> int:
        if device_id:
            revoked = self.ledger.revoke_for_device(credential_id, device_id)
        else:
            revoked = self.ledger.revoke_all_for_subject(credential_id)
        self._emit(
            AuditEventType.LOGOUT,
            credential_id=credential_id,
            device_id=device_id,
            meta=meta,
            metadata={"scope": "device" if device_id else "all", "revoked": revoked},
        )
        return revoked

    def _get_credential(self, credential_id: str) -> Credential:
        credential = self.store.get_credential(credential_id)
        if credential is None or credential.deleted_at is not None:
            raise NotFoundError("user not found", detail={"credential_id": credential_id})
        return credential

    def change_password(
        self,
        credential_id: str,
        current_password: str,
        new_password: str,
        meta: Optional[RequestMeta] = None,
    ) -> int:
        """Replace the password and revoke every refresh record.

        Returns the number of sessions revoked.
        """
        meta = meta or RequestMeta()
        credential = self._get_credential(credential_id)
        self._require_password(new_password, "new_password")
        if not self.hasher.verify_password(credential.password_hash, current_password or ""):
            self._emit(
                AuditEventType.PASSWORD_CHANGE,
                success=False,
                credential_id=credential_id,
                meta=meta,
                error_message="current password mismatch",
            )
            raise AuthenticationError("current password is incorrect")
        self.store.update_password(credential_id, self.hasher.hash_password(new_password))
        self._emit(AuditEventType.PASSWORD_CHANGE, credential_id=credential_id, meta=meta)
        return self.ledger.revoke_all_for_subject(credential_id)

    async def reset_password(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        verification_code: str,
        new_password: str,
        meta: Optional[RequestMeta] = None,
    ) -> int:
        meta = meta or RequestMeta()
        target: Optional[str] = None
        try:
            self._require_password(new_password, "new_password")
            if not verification_code:
                raise ValidationError(
                    "verification code is required", detail={"field": "verification_code"}
                )
            kind, target = normalize_target(
                email=email, phone=phone, default_country_code=self.default_country_code
            )
            await self.challenges.verify(
                target, verification_code, ChallengePurpose.RESET_PASSWORD, meta
            )
            credential = self._find_by_contact(kind, target)
            if credential is None or credential.deleted_at is not None:
                # same answer as a bad code so the target's existence is not revealed
                raise ValidationError("invalid or expired verification code")
        except ValidationError as exc:
            self._emit(
                AuditEventType.PASSWORD_RESET,
                success=False,
                target=target,
                meta=meta,
                error_message=exc.message,
            )
            raise
        self.store.update_password(credential.id, self.hasher.hash_password(new_password))
        self._emit(
            AuditEventType.PASSWORD_RESET,
            credential_id=credential.id,
            target=target,
            meta=meta,
        )
        return self.ledger.revoke_all_for_subject(credential.id)

    def _find_by_contact(self, kind: str, target: str) -> Optional[Credential]:
        if kind == "email":
            return self.store.get_credential_by_email(target)
        return self.store.get_credential_by_phone(target)

    async def send_verification_code(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        purpose: ChallengePurpose,
        meta: Optional[RequestMeta] = None,
    ) -> ChallengeReceipt:
        purpose = ChallengePurpose(purpose)
        kind, target = normalize_target(
            email=email, phone=phone, default_country_code=self.default_country_code
        )
        if purpose is ChallengePurpose.LOGIN and kind != "phone":
            raise ValidationError("verification code login requires a phone number")
        if purpose in _CLAIMING_PURPOSES and self._find_by_contact(kind, target) is not None:
            raise ConflictError(f"{kind} already registered", detail={"field": kind})
        return await self.challenges.send(target, purpose, meta)

    def authenticate(self, token: Optional[str]) -> SessionClaims:
        claims = self.codec.decode(token)
        if claims is None:
            raise AuthenticationError("invalid or expired session token")
        return claims

    def list_sessions(self, credential_id: str) -> List[RefreshRecord]:
        return self.ledger.list_active_sessions(credential_id)

    async def change_contact(
        self,
        credential_id: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        verification_code: str,
        meta: Optional[RequestMeta] = None,
    ) -> Credential:
        """Bind or replace an email/phone after proving ownership of the new one."""
        meta = meta or RequestMeta()
        credential = self._get_credential(credential_id)
        kind, target = normalize_target(
            email=email, phone=phone, default_country_code=self.default_country_code
        )
        current = getattr(credential, kind)
        if current == target:
            raise ValidationError(f"{kind} is unchanged", detail={"field": kind})
        holder = self._find_by_contact(kind, target)
        if holder is not None and holder.id != credential_id:
            raise ConflictError(f"{kind} already registered", detail={"field": kind})

        purpose = _CHANGE_PURPOSE[kind] if current else _BIND_PURPOSE[kind]
        await self.challenges.verify(target, verification_code, purpose, meta)
        try:
            updated = self.store.update_contact(credential_id, kind, target, verified=True)
        except ConstraintViolation as exc:
            raise ConflictError(f"{kind} already registered", detail={"field": kind}) from exc
        if updated is None:
            raise NotFoundError("user not found", detail={"credential_id": credential_id})
        self._emit(
            _CHANGE_EVENT[kind],
            credential_id=credential_id,
            target=target,
            meta=meta,
            metadata={"action": purpose.value},
        )
        return updated

    def _set_active(
        self,
        credential_id: str,
        is_active: bool,
        *,
        operator_id: Optional[str],
        meta: Optional[RequestMeta],
    ) -> Credential:
        credential = self.store.set_credential_active(credential_id, is_active)
        if credential is None:
            raise NotFoundError("user not found", detail={"credential_id": credential_id})
        revoked = 0 if is_active else self.ledger.revoke_all_for_subject(credential_id)
        self._emit(
            AuditEventType.ACCOUNT_UNLOCKED if is_active else AuditEventType.ACCOUNT_LOCKED,
            credential_id=credential_id,
            meta=meta,
            metadata={"operator_id": operator_id, "sessions_revoked": revoked},
        )
        return credential

    def lock_account(
        self,
        credential_id: str,
        *,
        operator_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Credential:
        return self._set_active(credential_id, False, operator_id=operator_id, meta=meta)

    def unlock_account(
        self,
        credential_id: str,
        *,
        operator_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Credential:
        return self._set_active(credential_id, True, operator_id=operator_id, meta=meta)

    def sweep_expired(self) -> Dict[str, int]:
        return {
            "challenges": self.challenges.sweep_expired(),
            "refresh_records": self.ledger.sweep_expired(),
        }
