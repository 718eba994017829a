from __future__ import annotations

import json
import os
import tempfile
import threading
from collections import Counter
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from idwarden.logging import get_logger
from idwarden.storage.errors import ConstraintViolation
from idwarden.storage.models import (
    AuditEventType,
    AuditRecord,
    Challenge,
    ChallengePurpose,
    Credential,
    RefreshRecord,
    Role,
    new_id,
    utcnow,
)

_CONTACT_FIELDS = ("email", "phone")


class MemoryStore:
    """In-process backing store for tests and single-node development.

    All reads return copies so callers observe snapshots, the same way rows
    come back from Postgres. Conditional updates run under ``_data_lock`` and
    are the in-memory equivalent of ``UPDATE ... WHERE <state> RETURNING``.
    When ``fs_root`` is given the state is persisted as JSON after each write.
    """

    store_type = "memory"

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.credentials: Dict[str, Credential] = {}
        self.refresh_records: Dict[str, RefreshRecord] = {}
        self.challenges: Dict[str, Challenge] = {}
        self.roles: Dict[str, Role] = {}
        self.credential_roles: Dict[str, Set[str]] = {}
        self.audit_records: List[AuditRecord] = []
        # RLock so helpers can re-acquire inside a held critical section
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # credentials
    def _assert_unique_credential(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.credentials.values():
            if existing.id == exclude_id:
                continue
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone is not None and existing.phone == phone:
                raise ConstraintViolation("phone already exists", {"field": "phone"})

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
        if not email and not phone:
            raise ConstraintViolation(
                "email or phone is required", {"field": "email"}
            )
        with self._data_lock:
            self._assert_unique_credential(username=username, email=email, phone=phone)
            credential = Credential(
                id=new_id(),
                username=username,
                password_hash=password_hash,
                email=email,
                phone=phone,
                is_active=is_active,
                email_verified=email_verified,
                phone_verified=phone_verified,
            )
            self.credentials[credential.id] = credential
            self._persist_state()
            return replace(credential)

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(credential_id)
            return replace(credential) if credential else None

    def _find_credential(self, attr: str, value: str) -> Optional[Credential]:
        with self._data_lock:
            found = next(
                (c for c in self.credentials.values() if getattr(c, attr) == value),
                None,
            )
            return replace(found) if found else None

    def get_credential_by_username(self, username: str) -> Optional[Credential]:
        return self._find_credential("username", username)

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        return self._find_credential("email", email)

    def get_credential_by_phone(self, phone: str) -> Optional[Credential]:
        return self._find_credential("phone", phone)

    def update_password(self, credential_id: str, password_hash: str) -> bool:
        with self._data_lock:
            credential = self.credentials.get(credential_id)
            if not credential:
                return False
            credential.password_hash = password_hash
            credential.updated_at = utcnow()
            self._persist_state()
            return True

    def set_credential_active(
        self, credential_id: str, is_active: bool
    ) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(credential_id)
            if not credential:
                return None
            credential.is_active = is_active
            credential.updated_at = utcnow()
            self._persist_state()
            return replace(credential)

    def update_contact(
        self, credential_id: str, field: str, value: str, *, verified: bool = False
    ) -> Optional[Credential]:
        if field not in _CONTACT_FIELDS:
            raise ValueError(f"unsupported contact field: {field}")
        with self._data_lock:
            credential = self.credentials.get(credential_id)
            if not credential:
                return None
            self._assert_unique_credential(exclude_id=credential_id, **{field: value})
            setattr(credential, field, value)
            setattr(credential, f"{field}_verified", verified)
            credential.updated_at = utcnow()
            self._persist_state()
            return replace(credential)

    def record_login(self, credential_id: str, ip_address: Optional[str]) -> None:
        with self._data_lock:
            credential = self.credentials.get(credential_id)
            if not credential:
                return
            credential.last_login_at = utcnow()
            credential.last_login_ip = ip_address
            self._persist_state()

    # refresh records
    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        with self._data_lock:
            self._insert_refresh_record(record)
            self._persist_state()
            return replace(record)

    def _insert_refresh_record(self, record: RefreshRecord) -> None:
        if record.credential_id not in self.credentials:
            raise ConstraintViolation(
                "credential does not exist", {"credential_id": record.credential_id}
            )
        if any(r.token_hash == record.token_hash for r in self.refresh_records.values()):
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        self.refresh_records[record.id] = replace(record)

    def get_refresh_record(self, record_id: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = self.refresh_records.get(record_id)
            return replace(record) if record else None

    def get_refresh_record_by_hash(self, token_hash: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            found = next(
                (r for r in self.refresh_records.values() if r.token_hash == token_hash),
                None,
            )
            return replace(found) if found else None

    def rotate_refresh_record(
        self, record_id: str, successor: RefreshRecord
    ) -> Optional[RefreshRecord]:
        """Deactivate ``record_id`` and insert ``successor`` as one unit.

        Returns ``None`` when the record is no longer active, i.e. another
        rotation or a revoke won the race.
        """
        with self._data_lock:
            current = self.refresh_records.get(record_id)
            if not current or not current.is_active:
                return None
            self._insert_refresh_record(successor)
            current.is_active = False
            current.last_used_at = utcnow()
            self._persist_state()
            return replace(successor)

    def deactivate_refresh_record(self, record_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_records.get(record_id)
            if not record or not record.is_active:
                return False
            record.is_active = False
            self._persist_state()
            return True

    def deactivate_refresh_records(
        self, credential_id: str, *, device_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            changed = 0
            for record in self.refresh_records.values():
                if record.credential_id != credential_id or not record.is_active:
                    continue
                if device_id is not None and record.device_id != device_id:
                    continue
                record.is_active = False
                changed += 1
            if changed:
                self._persist_state()
            return changed

    def list_active_refresh_records(
        self, credential_id: str, now: Optional[datetime] = None
    ) -> List[RefreshRecord]:
        now = now or utcnow()
        with self._data_lock:
            active = [
                replace(r)
                for r in self.refresh_records.values()
                if r.credential_id == credential_id and r.is_usable(now)
            ]
        # last_used_at desc with nulls last, then created_at desc
        active.sort(
            key=lambda r: (
                r.last_used_at is not None,
                r.last_used_at or r.created_at,
                r.created_at,
            ),
            reverse=True,
        )
        return active

    def delete_expired_refresh_records(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [rid for rid, r in self.refresh_records.items() if r.is_expired(now)]
            for rid in expired:
                self.refresh_records.pop(rid, None)
            if expired:
                self._persist_state()
            return len(expired)

    # challenges
    def create_challenge(self, challenge: Challenge) -> Challenge:
        with self._data_lock:
            self.challenges[challenge.id] = replace(challenge)
            self._persist_state()
            return replace(challenge)

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            return replace(challenge) if challenge else None

    def get_latest_challenge(
        self, target: str, purpose: ChallengePurpose, now: Optional[datetime] = None
    ) -> Optional[Challenge]:
        now = now or utcnow()
        with self._data_lock:
            candidates = [
                c
                for c in self.challenges.values()
                if c.target == target
                and c.purpose == purpose
                and not c.is_used
                and not c.is_expired(now)
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda c: c.created_at))

    def increment_challenge_attempts(self, challenge_id: str) -> Optional[int]:
        """Consume one attempt; ``None`` when the challenge is used or exhausted."""
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.is_used or challenge.exhausted:
                return None
            challenge.attempts += 1
            self._persist_state()
            return challenge.attempts

    def mark_challenge_used(self, challenge_id: str) -> bool:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.is_used:
                return False
            challenge.is_used = True
            self._persist_state()
            return True

    def delete_expired_challenges(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [cid for cid, c in self.challenges.items() if c.is_expired(now)]
            for cid in expired:
                self.challenges.pop(cid, None)
            if expired:
                self._persist_state()
            return len(expired)

    # roles
    def create_role(
        self, name: str, description: Optional[str] = None, *, is_active: bool = True
    ) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(id=new_id(), name=name, description=description, is_active=is_active)
            self.roles[role.id] = role
            self._persist_state()
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            found = next((r for r in self.roles.values() if r.name == name), None)
            return replace(found) if found else None

    def get_roles_by_names(self, names: Iterable[str]) -> List[Role]:
        wanted = set(names)
        with self._data_lock:
            return [replace(r) for r in self.roles.values() if r.name in wanted]

    def list_roles(self, *, include_inactive: bool = True) -> List[Role]:
        with self._data_lock:
            roles = [
                replace(r) for r in self.roles.values() if include_inactive or r.is_active
            ]
        return sorted(roles, key=lambda r: r.name)

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if name is not None and name != role.name:
                if any(r.name == name for r in self.roles.values()):
                    raise ConstraintViolation("role name already exists", {"field": "name"})
                role.name = name
            if description is not None:
                role.description = description
            if is_active is not None:
                role.is_active = is_active
            role.updated_at = utcnow()
            self._persist_state()
            return replace(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if role_id not in self.roles:
                return False
            if any(role_id in held for held in self.credential_roles.values()):
                raise ConstraintViolation("role is still assigned", {"field": "role_id"})
            self.roles.pop(role_id, None)
            self._persist_state()
            return True

    def count_role_members(self, role_id: str) -> int:
        with self._data_lock:
            return sum(1 for held in self.credential_roles.values() if role_id in held)

    def role_member_counts(self) -> Dict[str, int]:
        with self._data_lock:
            counts: Counter[str] = Counter()
            for held in self.credential_roles.values():
                counts.update(held)
            return {role_id: counts.get(role_id, 0) for role_id in self.roles}

    def list_credential_roles(self, credential_id: str) -> List[Role]:
        with self._data_lock:
            held = self.credential_roles.get(credential_id, set())
            roles = [replace(self.roles[rid]) for rid in held if rid in self.roles]
        return sorted(roles, key=lambda r: r.name)

    def add_credential_roles(
        self, credential_id: str, role_ids: Sequence[str]
    ) -> List[str]:
        with self._data_lock:
            if credential_id not in self.credentials:
                raise ConstraintViolation(
                    "credential does not exist", {"credential_id": credential_id}
                )
            missing = [rid for rid in role_ids if rid not in self.roles]
            if missing:
                raise ConstraintViolation("role does not exist", {"role_ids": missing})
            held = self.credential_roles.setdefault(credential_id, set())
            added = [rid for rid in dict.fromkeys(role_ids) if rid not in held]
            held.update(added)
            if added:
                self._persist_state()
            return added

    def remove_credential_roles(
        self, credential_id: str, role_ids: Sequence[str], *, min_remaining: int = 1
    ) -> List[str]:
        """Remove assignments, refusing to leave fewer than ``min_remaining`` active roles.

        Inactive roles grant nothing, so they never count toward the minimum
        and removing them is always allowed. The check and the removal happen
        under one lock acquisition so concurrent removals cannot both pass it.
        """
        with self._data_lock:
            held = self.credential_roles.get(credential_id, set())
            removing = [rid for rid in dict.fromkeys(role_ids) if rid in held]
            if not removing:
                return []
            active = {rid for rid in held if rid in self.roles and self.roles[rid].is_active}
            remaining_active = active.difference(removing)
            if len(remaining_active) < min_remaining and active.intersection(removing):
                raise ConstraintViolation(
                    "credential must retain at least one role",
                    {"field": "roles", "min_remaining": min_remaining},
                )
            held.difference_update(removing)
            self._persist_state()
            return removing

    # audit
    def append_audit_record(self, record: AuditRecord) -> AuditRecord:
        with self._data_lock:
            self.audit_records.append(replace(record))
            self._persist_state()
            return replace(record)

    def _filter_audit(
        self,
        *,
        credential_id: Optional[str] = None,
        event_types: Optional[Sequence[AuditEventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AuditRecord]:
        wanted = set(event_types) if event_types else None
        return [
            r
            for r in self.audit_records
            if (credential_id is None or r.credential_id == credential_id)
            and (wanted is None or r.event_type in wanted)
            and (since is None or r.created_at >= since)
            and (until is None or r.created_at <= until)
        ]

    def list_audit_records(
        self,
        *,
        credential_id: Optional[str] = None,
        event_types: Optional[Sequence[AuditEventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        with self._data_lock:
            matched = self._filter_audit(
                credential_id=credential_id,
                event_types=event_types,
                since=since,
                until=until,
            )
            # Appends are chronological; reverse keeps ties newest-first
            ordered = sorted(reversed(matched), key=lambda r: r.created_at, reverse=True)
            return [replace(r) for r in ordered[:limit]]

    def count_audit_records(
        self,
        event_types: Sequence[AuditEventType],
        *,
        since: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            return len(self._filter_audit(event_types=event_types, since=since))

    def top_audit_targets(
        self,
        event_type: AuditEventType,
        *,
        since: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[Tuple[str, int]]:
        with self._data_lock:
            counts = Counter(
                r.target
                for r in self._filter_audit(event_types=[event_type], since=since)
                if r.target
            )
        return sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _dump(obj: Any) -> Dict[str, Any]:
        payload = asdict(obj)
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
            elif hasattr(value, "value"):
                payload[key] = value.value
        return payload

    @staticmethod
    def _load_datetimes(raw: Dict[str, Any], *keys: str) -> Dict[str, Any]:
        for key in keys:
            if raw.get(key):
                raw[key] = datetime.fromisoformat(raw[key])
        return raw

    def ping(self) -> None:
        if self.fs_root is None:
            return
        state_dir = self._state_path().parent
        if not os.access(state_dir, os.W_OK):
            raise OSError(f"state directory is not writable: {state_dir}")

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "credentials": [self._dump(c) for c in self.credentials.values()],
            "refresh_records": [self._dump(r) for r in self.refresh_records.values()],
            "challenges": [self._dump(c) for c in self.challenges.values()],
            "roles": [self._dump(r) for r in self.roles.values()],
            "credential_roles": {
                cid: sorted(held) for cid, held in self.credential_roles.items()
            },
            "audit_records": [self._dump(r) for r in self.audit_records],
        }
        path = self._state_path()
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, default=str)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_state_load_failed", error=str(exc), path=str(path))
            return False
        for raw in state.get("credentials", []):
            raw = self._load_datetimes(
                raw, "created_at", "updated_at", "last_login_at", "deleted_at"
            )
            self.credentials[raw["id"]] = Credential(**raw)
        for raw in state.get("refresh_records", []):
            raw = self._load_datetimes(raw, "expires_at", "last_used_at", "created_at")
            self.refresh_records[raw["id"]] = RefreshRecord(**raw)
        for raw in state.get("challenges", []):
            raw = self._load_datetimes(raw, "expires_at", "created_at")
            raw["purpose"] = ChallengePurpose(raw["purpose"])
            self.challenges[raw["id"]] = Challenge(**raw)
        for raw in state.get("roles", []):
            raw = self._load_datetimes(raw, "created_at", "updated_at")
            self.roles[raw["id"]] = Role(**raw)
        self.credential_roles = {
            cid: set(held) for cid, held in state.get("credential_roles", {}).items()
        }
        for raw in state.get("audit_records", []):
            raw = self._load_datetimes(raw, "created_at")
            raw["event_type"] = AuditEventType(raw["event_type"])
            self.audit_records.append(AuditRecord(**raw))
        self.logger.info(
            "memory_store_state_loaded",
            credentials=len(self.credentials),
            roles=len(self.roles),
        )
        return True
