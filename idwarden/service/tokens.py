from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from idwarden.logging import get_logger
from idwarden.service.audit import AuditEmitter, AuditEvent
from idwarden.service.errors import AuthenticationError
from idwarden.service.hashing import SecretHasher
from idwarden.storage.models import AuditEventType, RefreshRecord, RequestMeta, utcnow

logger = get_logger(__name__)


class RefreshStore(Protocol):
    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        ...

    def get_refresh_record_by_hash(self, token_hash: str) -> Optional[RefreshRecord]:
        ...

    def rotate_refresh_record(
        self, record_id: str, successor: RefreshRecord
    ) -> Optional[RefreshRecord]:
        ...

    def deactivate_refresh_record(self, record_id: str) -> bool:
        ...

    def deactivate_refresh_records(
        self, credential_id: str, *, device_id: Optional[str] = None
    ) -> int:
        ...

    def list_active_refresh_records(
        self, credential_id: str, now: Optional[datetime] = None
    ) -> List[RefreshRecord]:
        ...

    def delete_expired_refresh_records(self, now: Optional[datetime] = None) -> int:
        ...


@dataclass
class IssuedRefresh:
    """A freshly minted refresh secret. ``secret`` is never persisted."""

    secret: str
    record: RefreshRecord


class TokenLedger:
    """Refresh credential lifecycle: issue, rotate, revoke, sweep."""

    _INVALID = "invalid or expired refresh token"

    def __init__(
        self,
        store: RefreshStore,
        hasher: SecretHasher,
        audit: AuditEmitter,
        *,
        ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.audit = audit
        self.ttl = ttl

    def _new_record(
        self,
        credential_id: str,
        *,
        device_id: Optional[str],
        meta: RequestMeta,
    ) -> IssuedRefresh:
        secret = self.hasher.generate_refresh_secret()
        record = RefreshRecord.new(
            credential_id,
            self.hasher.digest_refresh_secret(secret),
            self.ttl,
            device_id=device_id,
            user_agent=meta.user_agent,
            ip_address=meta.ip_address,
        )
        return IssuedRefresh(secret=secret, record=record)

    def issue(
        self,
        credential_id: str,
        *,
        device_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> IssuedRefresh:
        meta = meta or RequestMeta()
        issued = self._new_record(credential_id, device_id=device_id, meta=meta)
        self.store.create_refresh_record(issued.record)
        self.audit.record(
            AuditEvent(
                AuditEventType.REFRESH_TOKEN_ISSUED,
                credential_id=credential_id,
                device_id=device_id,
                meta=meta,
                metadata={"refresh_id": issued.record.id},
            )
        )
        return issued

    def _reject(
        self,
        reason: str,
        *,
        credential_id: Optional[str],
        device_id: Optional[str],
        meta: RequestMeta,
    ) -> AuthenticationError:
        logger.warning("refresh_rejected", reason=reason, credential_id=credential_id)
        self.audit.record(
            AuditEvent(
                AuditEventType.REFRESH_TOKEN_USED,
                success=False,
                credential_id=credential_id,
                device_id=device_id,
                meta=meta,
                metadata={"reason": reason},
                error_message=self._INVALID,
            )
        )
        return AuthenticationError(self._INVALID)

    def rotate(
        self,
        secret: str,
        *,
        device_id: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> IssuedRefresh:
        """Exchange a refresh secret for a successor.

        The predecessor is deactivated and the successor inserted atomically;
        a secret that has already been rotated (or revoked) is rejected.
        """
        meta = meta or RequestMeta()
        if not secret:
            raise self._reject("missing", credential_id=None, device_id=device_id, meta=meta)
        current = self.store.get_refresh_record_by_hash(
            self.hasher.digest_refresh_secret(secret)
        )
        if current is None:
            raise self._reject("unknown", credential_id=None, device_id=device_id, meta=meta)
        if not current.is_active:
            raise self._reject(
                "inactive", credential_id=current.credential_id, device_id=device_id, meta=meta
            )
        if current.is_expired():
            raise self._reject(
                "expired", credential_id=current.credential_id, device_id=device_id, meta=meta
            )
        if device_id and current.device_id and device_id != current.device_id:
            raise self._reject(
                "device_mismatch",
                credential_id=current.credential_id,
                device_id=device_id,
                meta=meta,
            )

        successor = self._new_record(
            current.credential_id,
            device_id=current.device_id or device_id,
            meta=meta,
        )
        if self.store.rotate_refresh_record(current.id, successor.record) is None:
            raise self._reject(
                "concurrent_rotation",
                credential_id=current.credential_id,
                device_id=device_id,
                meta=meta,
            )
        self.audit.record(
            AuditEvent(
                AuditEventType.REFRESH_TOKEN_USED,
                credential_id=current.credential_id,
                device_id=successor.record.device_id,
                meta=meta,
                metadata={
                    "previous_id": current.id,
                    "refresh_id": successor.record.id,
                },
            )
        )
        return successor

    def _record_revoked(
        self, credential_id: Optional[str], count: int, *, device_id: Optional[str] = None, scope: str
    ) -> None:
        self.audit.record(
            AuditEvent(
                AuditEventType.REFRESH_TOKEN_REVOKED,
                credential_id=credential_id,
                device_id=device_id,
                metadata={"scope": scope, "count": count},
            )
        )

    def revoke(self, record_id: str, *, credential_id: Optional[str] = None) -> bool:
        changed = self.store.deactivate_refresh_record(record_id)
        if changed:
            self._record_revoked(credential_id, 1, scope="record")
        return changed

    def revoke_all_for_subject(self, credential_id: str) -> int:
        count = self.store.deactivate_refresh_records(credential_id)
        if count:
            self._record_revoked(credential_id, count, scope="all")
        return count

    def revoke_for_device(self, credential_id: str, device_id: str) -> int:
        count = self.store.deactivate_refresh_records(credential_id, device_id=device_id)
        if count:
            self._record_revoked(credential_id, count, device_id=device_id, scope="device")
        return count

    def list_active_sessions(self, credential_id: str) -> List[RefreshRecord]:
        return self.store.list_active_refresh_records(credential_id, utcnow())

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_refresh_records(utcnow())
        if removed:
            logger.info("refresh_records_swept", count=removed)
        return removed
