from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Iterable, Mapping, Optional

from idwarden.config import Settings
from idwarden.logging import get_logger
from idwarden.service.audit import AuditEmitter, AuditEvent
from idwarden.service.errors import (
    AuthenticationError,
    InsufficientPermissionError,
    NoRolesAssignedError,
)
from idwarden.service.session_tokens import SessionClaims, SessionTokenCodec
from idwarden.storage.models import AuditEventType, RequestMeta

logger = get_logger(__name__)


class AccessKind(str, Enum):
    PUBLIC = "public"
    AUTHENTICATED_ONLY = "authenticated_only"
    ROLE_REQUIRED = "role_required"


@dataclass(frozen=True)
class AccessRequirement:
    kind: AccessKind
    roles: FrozenSet[str] = frozenset()

    @classmethod
    def public(cls) -> "AccessRequirement":
        return cls(AccessKind.PUBLIC)

    @classmethod
    def authenticated(cls) -> "AccessRequirement":
        return cls(AccessKind.AUTHENTICATED_ONLY)

    @classmethod
    def role_required(cls, *roles: str) -> "AccessRequirement":
        names = frozenset(r.strip().upper() for r in roles if r and r.strip())
        if not names:
            raise ValueError("role_required needs at least one role")
        return cls(AccessKind.ROLE_REQUIRED, names)


class AccessPolicy:
    """Operation name -> requirement table; read-only once built."""

    def __init__(self, requirements: Mapping[str, AccessRequirement]) -> None:
        self._requirements = MappingProxyType(dict(requirements))

    def requirement_for(self, operation: str) -> AccessRequirement:
        try:
            return self._requirements[operation]
        except KeyError:
            raise LookupError(f"no access requirement declared for {operation!r}") from None

    def operations(self) -> Iterable[str]:
        return self._requirements.keys()

    def __contains__(self, operation: object) -> bool:
        return operation in self._requirements


def build_access_policy(settings: Settings) -> AccessPolicy:
    admin = AccessRequirement.role_required(settings.admin_role_name)
    public = AccessRequirement.public()
    authenticated = AccessRequirement.authenticated()
    return AccessPolicy(
        {
            "auth.register": public,
            "auth.login": public,
            "auth.refresh": public,
            "auth.send_code": public,
            "auth.reset_password": public,
            "auth.logout": authenticated,
            "auth.change_password": authenticated,
            "auth.change_contact": authenticated,
            "auth.list_sessions": authenticated,
            "roles.list": admin,
            "roles.create": admin,
            "roles.update": admin,
            "roles.delete": admin,
            "roles.statistics": admin,
            "users.assign_roles": admin,
            "users.remove_roles": admin,
            "users.lock": admin,
            "users.unlock": admin,
            "audit.query": admin,
            "audit.statistics": admin,
        }
    )


class AccessEvaluator:
    """Gate operations on the session token's role snapshot.

    Role membership is read from the token only; tokens are re-minted with
    fresh roles on every login and refresh.
    """

    def __init__(
        self, policy: AccessPolicy, codec: SessionTokenCodec, audit: AuditEmitter
    ) -> None:
        self.policy = policy
        self.codec = codec
        self.audit = audit

    def evaluate(
        self,
        operation: str,
        token: Optional[str],
        meta: Optional[RequestMeta] = None,
    ) -> Optional[SessionClaims]:
        requirement = self.policy.requirement_for(operation)
        if requirement.kind is AccessKind.PUBLIC:
            return None

        claims = self.codec.decode(token)
        if claims is None:
            raise AuthenticationError("invalid or expired session token")
        if requirement.kind is AccessKind.AUTHENTICATED_ONLY:
            return claims

        held = frozenset(claims.roles)
        if held & requirement.roles:
            self.audit.record(
                AuditEvent(
                    AuditEventType.ACCESS_GRANTED,
                    credential_id=claims.subject,
                    target=operation,
                    meta=meta,
                    metadata={"required_roles": sorted(requirement.roles)},
                )
            )
            return claims

        if not held:
            error = NoRolesAssignedError(resource=operation)
        else:
            error = InsufficientPermissionError(
                required_roles=requirement.roles, user_roles=held, resource=operation
            )
        logger.warning(
            "permission_denied",
            operation=operation,
            credential_id=claims.subject,
            reason=error.reason,
        )
        self.audit.record(
            AuditEvent(
                AuditEventType.PERMISSION_DENIED,
                success=False,
                credential_id=claims.subject,
                target=operation,
                meta=meta,
                metadata={
                    "reason": error.reason,
                    "required_roles": sorted(requirement.roles),
                    "user_roles": sorted(held),
                },
                error_message=error.message,
            )
        )
        raise error
