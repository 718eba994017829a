from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_REQUIRED_TABLES = (
    "credential",
    "refresh_record",
    "challenge",
    "role",
    "credential_role",
    "audit_record",
)

_CONTACT_FIELDS = ("email", "phone")


def _unique_field(exc: errors.UniqueViolation) -> Optional[str]:
    """Derive the offending column from a ``<table>_<column>_key`` constraint name."""
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for field in ("username", "email", "phone", "token_hash", "name"):
        if f"_{field}_" in f"_{constraint}":
            return field
    return None


def _as_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed store; schema lives in ``sql/001_identity.sql``.

    State transitions that must be linearizable are single conditional
    ``UPDATE ... WHERE <expected state> RETURNING`` statements, and
    multi-statement units run inside ``conn.transaction()``.
    """

    store_type = "postgres"

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_identity.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    # row mappers
    @staticmethod
    def _credential_from_row(row: Dict[str, Any]) -> Credential:
        return Credential(
            id=str(row["id"]),
            username=row["username"],
            password_hash=row["password_hash"],
            email=row.get("email"),
            phone=row.get("phone"),
            is_active=row["is_active"],
            email_verified=row["email_verified"],
            phone_verified=row["phone_verified"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshRecord:
        return RefreshRecord(
            id=str(row["id"]),
            credential_id=str(row["credential_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            device_id=row.get("device_id"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            is_active=row["is_active"],
            last_used_at=row.get("last_used_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> Challenge:
        return Challenge(
            id=str(row["id"]),
            target=row["target"],
            purpose=ChallengePurpose(row["purpose"]),
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            is_used=row["is_used"],
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            is_active=row["is_active"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditRecord:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return AuditRecord(
            id=str(row["id"]),
            event_type=AuditEventType(row["event_type"]),
            success=row["success"],
            credential_id=_as_str(row.get("credential_id")),
            target=row.get("target"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_id=row.get("device_id"),
            metadata=metadata,
            error_message=row.get("error_message"),
            created_at=row["created_at"],
        )

    # credentials
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
            raise ConstraintViolation("email or phone is required", {"field": "email"})
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO credential (id, username, password_hash, email, phone,
                                            is_active, email_verified, phone_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        username,
                        password_hash,
                        email,
                        phone,
                        is_active,
                        email_verified,
                        phone_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc) or "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._credential_from_row(row)

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE id = %s", (credential_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def _find_credential(self, column: str, value: str) -> Optional[Credential]:
        # column comes from a fixed whitelist below, never from callers
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM credential WHERE {column} = %s", (value,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def get_credential_by_username(self, username: str) -> Optional[Credential]:
        return self._find_credential("username", username)

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        return self._find_credential("email", email)

    def get_credential_by_phone(self, phone: str) -> Optional[Credential]:
        return self._find_credential("phone", phone)

    def update_password(self, credential_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE credential SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING id",
                (password_hash, credential_id),
            ).fetchone()
        return row is not None

    def set_credential_active(
        self, credential_id: str, is_active: bool
    ) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE credential SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, credential_id),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def update_contact(
        self, credential_id: str, field: str, value: str, *, verified: bool = False
    ) -> Optional[Credential]:
        if field not in _CONTACT_FIELDS:
            raise ValueError(f"unsupported contact field: {field}")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE credential SET {field} = %s, {field}_verified = %s, updated_at = now() "
                    "WHERE id = %s RETURNING *",
                    (value, verified, credential_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._credential_from_row(row) if row else None

    def record_login(self, credential_id: str, ip_address: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE credential SET last_login_at = now(), last_login_ip = %s WHERE id = %s",
                (ip_address, credential_id),
            )

    # refresh records
    @staticmethod
    def _insert_refresh(conn, record: RefreshRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_record (id, credential_id, token_hash, expires_at, device_id,
                                        user_agent, ip_address, is_active, last_used_at, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.credential_id,
                record.token_hash,
                record.expires_at,
                record.device_id,
                record.user_agent,
                record.ip_address,
                record.is_active,
                record.last_used_at,
                record.created_at,
            ),
        )

    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "credential does not exist", {"credential_id": record.credential_id}
            )
        return record

    def get_refresh_record(self, record_id: str) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_record WHERE id = %s", (record_id,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def get_refresh_record_by_hash(self, token_hash: str) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_record WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_record(
        self, record_id: str, successor: RefreshRecord
    ) -> Optional[RefreshRecord]:
        """Deactivate ``record_id`` and insert ``successor`` in one transaction.

        Concurrent rotations of the same row serialize on the row lock taken
        by the conditional UPDATE; the loser re-evaluates ``is_active`` and
        matches nothing, so at most one successor is ever inserted.
        """
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE refresh_record SET is_active = FALSE, last_used_at = now()
                    WHERE id = %s AND is_active
                    RETURNING id
                    """,
                    (record_id,),
                ).fetchone()
                if not row:
                    return None
                self._insert_refresh(conn, successor)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        return successor

    def deactivate_refresh_record(self, record_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_record SET is_active = FALSE WHERE id = %s AND is_active RETURNING id",
                (record_id,),
            ).fetchone()
        return row is not None

    def deactivate_refresh_records(
        self, credential_id: str, *, device_id: Optional[str] = None
    ) -> int:
        query = "UPDATE refresh_record SET is_active = FALSE WHERE credential_id = %s AND is_active"
        params: List[Any] = [credential_id]
        if device_id is not None:
            query += " AND device_id = %s"
            params.append(device_id)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount or 0

    def list_active_refresh_records(
        self, credential_id: str, now: Optional[datetime] = None
    ) -> List[RefreshRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_record
                WHERE credential_id = %s AND is_active AND expires_at > %s
                ORDER BY last_used_at DESC NULLS LAST, created_at DESC
                """,
                (credential_id, now or utcnow()),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def delete_expired_refresh_records(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_record WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount or 0

    # challenges
    def create_challenge(self, challenge: Challenge) -> Challenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO challenge (id, target, purpose, code_hash, expires_at, attempts,
                                       max_attempts, is_used, ip_address, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.target,
                    challenge.purpose.value,
                    challenge.code_hash,
                    challenge.expires_at,
                    challenge.attempts,
                    challenge.max_attempts,
                    challenge.is_used,
                    challenge.ip_address,
                    challenge.created_at,
                ),
            )
        return challenge

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def get_latest_challenge(
        self, target: str, purpose: ChallengePurpose, now: Optional[datetime] = None
    ) -> Optional[Challenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM challenge
                WHERE target = %s AND purpose = %s AND NOT is_used AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (target, purpose.value, now or utcnow()),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def increment_challenge_attempts(self, challenge_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE challenge SET attempts = attempts + 1
                WHERE id = %s AND NOT is_used AND attempts < max_attempts
                RETURNING attempts
                """,
                (challenge_id,),
            ).fetchone()
        return row["attempts"] if row else None

    def mark_challenge_used(self, challenge_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE challenge SET is_used = TRUE WHERE id = %s AND NOT is_used RETURNING id",
                (challenge_id,),
            ).fetchone()
        return row is not None

    def delete_expired_challenges(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM challenge WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount or 0

    # roles
    def create_role(
        self, name: str, description: Optional[str] = None, *, is_active: bool = True
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO role (id, name, description, is_active) VALUES (%s, %s, %s, %s) RETURNING *",
                    (new_id(), name, description, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_roles_by_names(self, names: Iterable[str]) -> List[Role]:
        wanted = list(dict.fromkeys(names))
        if not wanted:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM role WHERE name = ANY(%s)", (wanted,)
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def list_roles(self, *, include_inactive: bool = True) -> List[Role]:
        query = "SELECT * FROM role"
        if not include_inactive:
            query += " WHERE is_active"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY name").fetchall()
        return [self._role_from_row(row) for row in rows]

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[Role]:
        assignments = ["updated_at = now()"]
        params: List[Any] = []
        for column, value in (("name", name), ("description", description), ("is_active", is_active)):
            if value is not None:
                assignments.append(f"{column} = %s")
                params.append(value)
        params.append(role_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE role SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "DELETE FROM role WHERE id = %s RETURNING id", (role_id,)
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role is still assigned", {"field": "role_id"})
        return row is not None

    def count_role_members(self, role_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM credential_role WHERE role_id = %s", (role_id,)
            ).fetchone()
        return int(row["c"]) if row else 0

    def role_member_counts(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.id, COUNT(cr.credential_id) AS c
                FROM role r LEFT JOIN credential_role cr ON cr.role_id = r.id
                GROUP BY r.id
                """
            ).fetchall()
        return {str(row["id"]): int(row["c"]) for row in rows}

    def list_credential_roles(self, credential_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM role r
                JOIN credential_role cr ON cr.role_id = r.id
                WHERE cr.credential_id = %s
                ORDER BY r.name
                """,
                (credential_id,),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def add_credential_roles(
        self, credential_id: str, role_ids: Sequence[str]
    ) -> List[str]:
        added: List[str] = []
        try:
            with self._connect() as conn, conn.transaction():
                for role_id in dict.fromkeys(role_ids):
                    row = conn.execute(
                        """
                        INSERT INTO credential_role (credential_id, role_id) VALUES (%s, %s)
                        ON CONFLICT DO NOTHING
                        RETURNING role_id
                        """,
                        (credential_id, role_id),
                    ).fetchone()
                    if row:
                        added.append(str(row["role_id"]))
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "credential or role does not exist", {"credential_id": credential_id}
            )
        return added

    def remove_credential_roles(
        self, credential_id: str, role_ids: Sequence[str], *, min_remaining: int = 1
    ) -> List[str]:
        """Remove assignments under a row lock on the credential.

        ``FOR UPDATE`` serializes concurrent removals for the same credential
        so the remaining-count check reads committed state. Only active roles
        count toward ``min_remaining``.
        """
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "SELECT id FROM credential WHERE id = %s FOR UPDATE", (credential_id,)
            )
            rows = conn.execute(
                """
                SELECT cr.role_id, r.is_active
                FROM credential_role cr JOIN role r ON r.id = cr.role_id
                WHERE cr.credential_id = %s
                """,
                (credential_id,),
            ).fetchall()
            held = {str(row["role_id"]) for row in rows}
            active = {str(row["role_id"]) for row in rows if row["is_active"]}
            removing = [rid for rid in dict.fromkeys(role_ids) if rid in held]
            if not removing:
                return []
            remaining_active = active.difference(removing)
            if len(remaining_active) < min_remaining and active.intersection(removing):
                raise ConstraintViolation(
                    "credential must retain at least one role",
                    {"field": "roles", "min_remaining": min_remaining},
                )
            conn.execute(
                "DELETE FROM credential_role WHERE credential_id = %s AND role_id = ANY(%s::uuid[])",
                (credential_id, removing),
            )
        return removing

    # audit
    def append_audit_record(self, record: AuditRecord) -> AuditRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_record (id, event_type, success, credential_id, target, ip_address,
                                          user_agent, device_id, metadata, error_message, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.event_type.value,
                    record.success,
                    record.credential_id,
                    record.target,
                    record.ip_address,
                    record.user_agent,
                    record.device_id,
                    json.dumps(record.metadata or {}, default=str),
                    record.error_message,
                    record.created_at,
                ),
            )
        return record

    @staticmethod
    def _audit_filters(
        *,
        credential_id: Optional[str] = None,
        event_types: Optional[Sequence[AuditEventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if credential_id is not None:
            clauses.append("credential_id = %s")
            params.append(credential_id)
        if event_types:
            clauses.append("event_type = ANY(%s)")
            params.append([AuditEventType(e).value for e in event_types])
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if until is not None:
            clauses.append("created_at <= %s")
            params.append(until)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_audit_records(
        self,
        *,
        credential_id: Optional[str] = None,
        event_types: Optional[Sequence[AuditEventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        where, params = self._audit_filters(
            credential_id=credential_id, event_types=event_types, since=since, until=until
        )
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_record{where} ORDER BY created_at DESC LIMIT %s",
                [*params, limit],
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]

    def count_audit_records(
        self,
        event_types: Sequence[AuditEventType],
        *,
        since: Optional[datetime] = None,
    ) -> int:
        where, params = self._audit_filters(event_types=event_types, since=since)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS c FROM audit_record{where}", params
            ).fetchone()
        return int(row["c"]) if row else 0

    def top_audit_targets(
        self,
        event_type: AuditEventType,
        *,
        since: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[Tuple[str, int]]:
        where, params = self._audit_filters(event_types=[event_type], since=since)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT target, COUNT(*) AS c FROM audit_record{where} AND target IS NOT NULL
                GROUP BY target
                ORDER BY c DESC, target ASC
                LIMIT %s
                """,
                [*params, limit],
            ).fetchall()
        return [(row["target"], int(row["c"])) for row in rows]
