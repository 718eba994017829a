from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Header, Path, Query, Request

from idwarden.api.schemas import (
    AuditRecordResponse,
    AuditStatisticsResponse,
    AuthResponse,
    CodeSentResponse,
    ContactChangeRequest,
    CredentialResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    RoleAssignmentRequest,
    RoleAssignmentResponse,
    RoleCreateRequest,
    RoleResponse,
    RoleUpdateRequest,
    RoleUsageResponse,
    SendCodeRequest,
    SessionResponse,
)
from idwarden.logging import bind_subject
from idwarden.service.audit import AuditQuery
from idwarden.service.auth import AuthResult
from idwarden.service.errors import ValidationError
from idwarden.service.runtime import get_runtime
from idwarden.service.session_tokens import SessionClaims
from idwarden.service.targets import client_ip_from_headers
from idwarden.storage.models import (
    AuditEventType,
    AuditRecord,
    Credential,
    RefreshRecord,
    RequestMeta,
    Role,
)

router = APIRouter(prefix="/v1")

# row ids are UUIDs in every store
_ID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _request_meta(request: Request) -> RequestMeta:
    peer = request.client.host if request.client else None
    return RequestMeta(
        ip_address=client_ip_from_headers(request.headers, peer),
        user_agent=request.headers.get("user-agent"),
    )


def _authorize(
    operation: str, request: Request, authorization: Optional[str]
) -> Optional[SessionClaims]:
    """Run the access policy for ``operation``; returns claims unless public."""
    runtime = get_runtime()
    claims = runtime.access.evaluate(
        operation, _bearer_token(authorization), _request_meta(request)
    )
    if claims is not None:
        bind_subject(claims.subject)
    return claims


def _credential_response(credential: Credential) -> CredentialResponse:
    return CredentialResponse(
        id=credential.id,
        username=credential.username,
        email=credential.email,
        phone=credential.phone,
        is_active=credential.is_active,
        email_verified=credential.email_verified,
        phone_verified=credential.phone_verified,
        last_login_at=credential.last_login_at,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_credential_response(result.credential),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        roles=result.roles,
    )


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        is_active=role.is_active,
        created_at=role.created_at,
        updated_at=role.updated_at,
    )


def _session_response(record: RefreshRecord) -> SessionResponse:
    return SessionResponse(
        id=record.id,
        device_id=record.device_id,
        user_agent=record.user_agent,
        ip_address=record.ip_address,
        created_at=record.created_at,
        last_used_at=record.last_used_at,
        expires_at=record.expires_at,
    )


def _audit_response(record: AuditRecord) -> AuditRecordResponse:
    return AuditRecordResponse(
        id=record.id,
        event_type=record.event_type,
        success=record.success,
        credential_id=record.credential_id,
        target=record.target,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        device_id=record.device_id,
        metadata=record.metadata,
        error_message=record.error_message,
        created_at=record.created_at,
    )


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a credential and return a session.

    Raises:
        403: If signup is disabled
        409: If the username, email or phone is already registered
    """
    _authorize("auth.register", request, None)
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.username,
        body.password,
        email=body.email,
        phone=body.phone,
        verification_code=body.verification_code,
        device_id=body.device_id,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with a password or a phone verification code."""
    _authorize("auth.login", request, None)
    runtime = get_runtime()
    result = await runtime.auth.login(
        email=body.email,
        phone=body.phone,
        username=body.username,
        password=body.password,
        verification_code=body.verification_code,
        device_id=body.device_id,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    _authorize("auth.refresh", request, None)
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        body.refresh_token, device_id=body.device_id, meta=_request_meta(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    claims = _authorize("auth.logout", request, authorization)
    runtime = get_runtime()
    revoked = runtime.auth.logout(
        claims.subject,
        device_id=body.device_id if body else None,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """Change the caller's password; every refresh token is revoked on success."""
    claims = _authorize("auth.change_password", request, authorization)
    runtime = get_runtime()
    revoked = runtime.auth.change_password(
        claims.subject,
        body.current_password,
        body.new_password,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest, request: Request):
    _authorize("auth.reset_password", request, None)
    runtime = get_runtime()
    revoked = await runtime.auth.reset_password(
        email=body.email,
        phone=body.phone,
        verification_code=body.verification_code,
        new_password=body.new_password,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/code", response_model=Envelope, status_code=202, tags=["auth"])
async def send_code(body: SendCodeRequest, request: Request):
    """Send a verification code.

    Raises:
        429: If a code was sent to this target or from this address within
            the rate window
    """
    _authorize("auth.send_code", request, None)
    runtime = get_runtime()
    receipt = await runtime.auth.send_verification_code(
        email=body.email,
        phone=body.phone,
        purpose=body.purpose,
        meta=_request_meta(request),
    )
    return Envelope(
        status="ok",
        data=CodeSentResponse(
            target=receipt.target,
            purpose=receipt.purpose,
            expires_at=receipt.expires_at,
            retry_after=receipt.retry_after,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(request: Request, authorization: Optional[str] = Header(None)):
    claims = _authorize("auth.list_sessions", request, authorization)
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(claims.subject)
    return Envelope(status="ok", data=[_session_response(s) for s in sessions])


@router.post("/auth/contact", response_model=Envelope, tags=["auth"])
async def change_contact(
    body: ContactChangeRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """Bind or replace the caller's email or phone after code verification."""
    claims = _authorize("auth.change_contact", request, authorization)
    runtime = get_runtime()
    credential = await runtime.auth.change_contact(
        claims.subject,
        email=body.email,
        phone=body.phone,
        verification_code=body.verification_code,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=_credential_response(credential))


# admin: roles


@router.get("/admin/roles", response_model=Envelope, tags=["admin"])
async def list_roles(
    request: Request,
    include_inactive: bool = Query(False),
    authorization: Optional[str] = Header(None),
):
    _authorize("roles.list", request, authorization)
    runtime = get_runtime()
    roles = runtime.roles.list_roles(include_inactive=include_inactive)
    return Envelope(status="ok", data=[_role_response(r) for r in roles])


@router.post("/admin/roles", response_model=Envelope, status_code=201, tags=["admin"])
async def create_role(
    body: RoleCreateRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    claims = _authorize("roles.create", request, authorization)
    runtime = get_runtime()
    role = runtime.roles.create(
        body.name,
        body.description,
        is_active=body.is_active,
        operator_id=claims.subject,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=_role_response(role))


@router.get("/admin/roles/stats", response_model=Envelope, tags=["admin"])
async def role_statistics(request: Request, authorization: Optional[str] = Header(None)):
    _authorize("roles.statistics", request, authorization)
    runtime = get_runtime()
    usage = runtime.roles.statistics()
    return Envelope(
        status="ok",
        data=[
            RoleUsageResponse(role=_role_response(u.role), member_count=u.member_count)
            for u in usage
        ],
    )


@router.patch("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def update_role(
    body: RoleUpdateRequest,
    request: Request,
    role_id: str = Path(..., pattern=_ID_PATTERN),
    authorization: Optional[str] = Header(None),
):
    claims = _authorize("roles.update", request, authorization)
    runtime = get_runtime()
    role = runtime.roles.update(
        role_id,
        name=body.name,
        description=body.description,
        is_active=body.is_active,
        operator_id=claims.subject,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=_role_response(role))


@router.delete("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def delete_role(
    request: Request,
    role_id: str = Path(..., pattern=_ID_PATTERN),
    authorization: Optional[str] = Header(None),
):
    claims = _authorize("roles.delete", request, authorization)
    runtime = get_runtime()
    runtime.roles.delete(role_id, operator_id=claims.subject, meta=_request_meta(request))
    return Envelope(status="ok", data={"deleted": role_id})


# admin: users


@router.post("/admin/users/{credential_id}/roles", response_model=Envelope, tags=["admin"])
async def assign_roles(
    body: RoleAssignmentRequest,
    request: Request,
    credential_id: str = Path(..., pattern=_ID_PATTERN),
    authorization: Optional[str] = Header(None),
):
    claims = _authorize("users.assign_roles", request, authorization)
    runtime = get_runtime()
    added = runtime.roles.assign(
        credential_id, body.roles, operator_id=claims.subject, meta=_request_meta(request)
    )
    return Envelope(
        status="ok",
        data=RoleAssignmentResponse(
            credential_id=credential_id,
            changed=added,
            roles=runtime.roles.role_names_for(credential_id),
        ),
    )


@router.delete("/admin/users/{credential_id}/roles", response_model=Envelope, tags=["admin"])
async def remove_roles(
    body: RoleAssignmentRequest,
    request: Request,
    credential_id: str = Path(..., pattern=_ID_PATTERN),
    authorization: Optional[str] = Header(None),
):
    claims = _authorize("users.remove_roles", request, authorization)
    runtime = get_runtime()
    removed = runtime.roles.remove(
        credential_id, body.roles, operator_id=claims.subject, meta=_request_meta(request)
    )
    return Envelope(
        status="ok",
        data=RoleAssignmentResponse(
            credential_id=credential_id,
            changed=removed,
            roles=runtime.roles.role_names_for(credential_id),
        ),
    )


@router.post("/admin/users/{credential_id}/lock", response_model=Envelope, tags=["admin"])
async def lock_user(
    request: Request,
    credential_id: str = Path(..., pattern=_ID_PATTERN),
    authorization: Optional[str] = Header(None),
):
    claims = _authorize("users.lock", request, authorization)
    if claims.subject == credential_id:
        raise ValidationError("cannot lock your own account")
    runtime = get_runtime()
    credential = runtime.auth.lock_account(
        credential_id, operator_id=claims.subject, meta=_request_meta(request)
    )
    return Envelope(status="ok", data=_credential_response(credential))


@router.post("/admin/users/{credential_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_user(
    request: Request,
    credential_id: str = Path(..., pattern=_ID_PATTERN),
    authorization: Optional[str] = Header(None),
):
    claims = _authorize("users.unlock", request, authorization)
    runtime = get_runtime()
    credential = runtime.auth.unlock_account(
        credential_id, operator_id=claims.subject, meta=_request_meta(request)
    )
    return Envelope(status="ok", data=_credential_response(credential))


# admin: audit


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def query_audit(
    request: Request,
    credential_id: Optional[str] = Query(None, pattern=_ID_PATTERN),
    event_type: Optional[List[AuditEventType]] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(100),
    authorization: Optional[str] = Header(None),
):
    _authorize("audit.query", request, authorization)
    runtime = get_runtime()
    records = runtime.audit.query(
        AuditQuery(
            credential_id=credential_id,
            event_types=event_type,
            since=since,
            until=until,
            limit=limit,
        )
    )
    return Envelope(status="ok", data=[_audit_response(r) for r in records])


@router.get("/admin/audit/stats", response_model=Envelope, tags=["admin"])
async def audit_statistics(
    request: Request,
    window_days: int = Query(30, ge=1, le=365),
    authorization: Optional[str] = Header(None),
):
    _authorize("audit.statistics", request, authorization)
    runtime = get_runtime()
    stats = runtime.audit.statistics(window_days)
    return Envelope(
        status="ok",
        data=AuditStatisticsResponse(
            window_days=stats.window_days,
            permission_denied_count=stats.permission_denied_count,
            access_granted_count=stats.access_granted_count,
            role_changes_count=stats.role_changes_count,
            top_denied_targets=[
                {"target": target, "count": count} for target, count in stats.top_denied_targets
            ],
        ),
    )
