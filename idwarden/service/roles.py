from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from idwarden.logging import get_logger
from idwarden.service.audit import AuditEmitter, AuditEvent
from idwarden.service.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from idwarden.storage.errors import ConstraintViolation
from idwarden.storage.models import AuditEventType, RequestMeta, Role

logger = get_logger(__name__)


class RoleStore(Protocol):
    def create_role(
        self, name: str, description: Optional[str] = None, *, is_active: bool = True
    ) -> Role:
        ...

    def get_role(self, role_id: str) -> Optional[Role]:
        ...

    def get_role_by_name(self, name: str) -> Optional[Role]:
        ...

    def get_roles_by_names(self, names: Iterable[str]) -> List[Role]:
        ...

    def list_roles(self, *, include_inactive: bool = True) -> List[Role]:
        ...

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[Role]:
        ...

    def delete_role(self, role_id: str) -> bool:
        ...

    def count_role_members(self, role_id: str) -> int:
        ...

    def role_member_counts(self) -> Dict[str, int]:
        ...

    def list_credential_roles(self, credential_id: str) -> List[Role]:
        ...

    def add_credential_roles(self, credential_id: str, role_ids: Sequence[str]) -> List[str]:
        ...

    def remove_credential_roles(
        self, credential_id: str, role_ids: Sequence[str], *, min_remaining: int = 1
    ) -> List[str]:
        ...


@dataclass
class RoleUsage:
    role: Role
    member_count: int


def normalize_role_name(name: str) -> str:
    normalized = (name or "").strip().upper()
    if not normalized:
        raise ValidationError("role name is required", detail={"field": "name"})
    if len(normalized) > 64:
        raise ValidationError("role name too long", detail={"field": "name"})
    return normalized


class RoleRegistry:
    """Role catalog and credential-role assignments.

    A credential that holds roles always keeps at least one: the store
    checks the remaining count in the same critical section as the delete.
    """

    def __init__(
        self,
        store: RoleStore,
        audit: AuditEmitter,
        *,
        system_roles: Sequence[str] = ("ADMIN",),
        default_role: Optional[str] = "USER",
    ) -> None:
        self.store = store
        self.audit = audit
        self.system_roles = frozenset(normalize_role_name(n) for n in system_roles)
        self.default_role = normalize_role_name(default_role) if default_role else None

    def _emit(
        self,
        event_type: AuditEventType,
        *,
        operator_id: Optional[str],
        meta: Optional[RequestMeta],
        metadata: dict,
        target: Optional[str] = None,
    ) -> None:
        self.audit.record(
            AuditEvent(
                event_type,
                credential_id=operator_id,
                target=target,
                meta=meta,
                metadata=metadata,
            )
        )

    def ensure_system_roles(self) -> List[Role]:
        """Create any missing system roles and the default role."""
        names = sorted(self.system_roles | ({self.default_role} if self.default_role else set()))
        created: List[Role] = []
        for name in names:
            if self.store.get_role_by_name(name) is not None:
                continue
            try:
                created.append(
                    self.store.create_role(
                        name,
                        "System role" if name in self.system_roles else "Default role",
                    )
                )
            except ConstraintViolation:
                # created by a concurrent bootstrap
                continue
        if created:
            logger.info("system_roles_seeded", roles=[r.name for r in created])
        return created

    def create(
        self,
        name: str,
        description: Optional[str] = None,
        *,
        is_active: bool = True,
        operator_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Role:
        normalized = normalize_role_name(name)
        try:
            role = self.store.create_role(normalized, description, is_active=is_active)
        except ConstraintViolation as exc:
            raise ConflictError("role name already exists", detail={"field": "name"}) from exc
        self._emit(
            AuditEventType.ROLE_CREATED,
            operator_id=operator_id,
            meta=meta,
            target=role.name,
            metadata={"role_id": role.id, "role_name": role.name},
        )
        return role

    def get(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def list_roles(self, include_inactive: bool = False) -> List[Role]:
        return self.store.list_roles(include_inactive=include_inactive)

    def update(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
        operator_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Role:
        existing = self.get(role_id)
        new_name = normalize_role_name(name) if name is not None else None
        if existing.name in self.system_roles and new_name and new_name != existing.name:
            raise ValidationError("system roles cannot be renamed", detail={"field": "name"})
        if existing.name in self.system_roles and is_active is False:
            raise ValidationError(
                "system roles cannot be deactivated", detail={"field": "is_active"}
            )
        try:
            role = self.store.update_role(
                role_id, name=new_name, description=description, is_active=is_active
            )
        except ConstraintViolation as exc:
            raise ConflictError("role name already exists", detail={"field": "name"}) from exc
        if role is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        changes = {
            key: value
            for key, value in (
                ("name", new_name),
                ("description", description),
                ("is_active", is_active),
            )
            if value is not None
        }
        self._emit(
            AuditEventType.ROLE_UPDATED,
            operator_id=operator_id,
            meta=meta,
            target=role.name,
            metadata={"role_id": role.id, "changes": changes, "previous_name": existing.name},
        )
        return role

    def delete(
        self,
        role_id: str,
        *,
        operator_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        role = self.get(role_id)
        if role.name in self.system_roles:
            raise ValidationError(
                "system roles cannot be deleted", detail={"role_name": role.name}
            )
        members = self.store.count_role_members(role_id)
        if members:
            raise ConflictError(
                "role is assigned to users", detail={"role_name": role.name, "members": members}
            )
        try:
            deleted = self.store.delete_role(role_id)
        except ConstraintViolation as exc:
            raise ConflictError(
                "role is assigned to users", detail={"role_name": role.name}
            ) from exc
        if not deleted:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        self._emit(
            AuditEventType.ROLE_DELETED,
            operator_id=operator_id,
            meta=meta,
            target=role.name,
            metadata={"role_id": role.id, "role_name": role.name},
        )

    def _resolve(self, role_names: Iterable[str]) -> List[Role]:
        wanted = list(dict.fromkeys(normalize_role_name(n) for n in role_names))
        if not wanted:
            raise ValidationError("at least one role name is required", detail={"field": "roles"})
        found = {role.name: role for role in self.store.get_roles_by_names(wanted)}
        missing = [name for name in wanted if name not in found]
        if missing:
            raise NotFoundError("roles not found", detail={"missing": missing})
        return [found[name] for name in wanted]

    def assign(
        self,
        credential_id: str,
        role_names: Iterable[str],
        *,
        operator_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> List[str]:
        """Grant roles; returns the names actually added (empty for a no-op)."""
        roles = self._resolve(role_names)
        try:
            added_ids = self.store.add_credential_roles(credential_id, [r.id for r in roles])
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail={"credential_id": credential_id}) from exc
        by_id = {r.id: r.name for r in roles}
        added = [by_id[rid] for rid in added_ids if rid in by_id]
        if added:
            self._emit(
                AuditEventType.ROLE_ASSIGNED,
                operator_id=operator_id,
                meta=meta,
                target=credential_id,
                metadata={"credential_id": credential_id, "roles": added},
            )
        return added

    def remove(
        self,
        credential_id: str,
        role_names: Iterable[str],
        *,
        operator_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> List[str]:
        roles = self._resolve(role_names)
        try:
            removed_ids = self.store.remove_credential_roles(
                credential_id, [r.id for r in roles], min_remaining=1
            )
        except ConstraintViolation as exc:
            raise ValidationError(
                "user must keep at least one role", detail={"field": "roles"}
            ) from exc
        by_id = {r.id: r.name for r in roles}
        removed = [by_id[rid] for rid in removed_ids if rid in by_id]
        if removed:
            self._emit(
                AuditEventType.ROLE_REMOVED,
                operator_id=operator_id,
                meta=meta,
                target=credential_id,
                metadata={"credential_id": credential_id, "roles": removed},
            )
        return removed

    def role_names_for(self, credential_id: str) -> List[str]:
        return [r.name for r in self.store.list_credential_roles(credential_id) if r.is_active]

    def has_any_role(self, credential_id: str, names: Iterable[str]) -> bool:
        wanted = {normalize_role_name(n) for n in names}
        return bool(wanted.intersection(self.role_names_for(credential_id)))

    def statistics(self) -> List[RoleUsage]:
        counts = self.store.role_member_counts()
        return [
            RoleUsage(role=role, member_count=counts.get(role.id, 0))
            for role in self.store.list_roles(include_inactive=True)
        ]
