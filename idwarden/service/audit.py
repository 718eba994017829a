from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from idwarden.logging import get_logger, sanitize_error_message
from idwarden.storage.models import (
    ROLE_CHANGE_EVENTS,
    AuditEventType,
    AuditRecord,
    RequestMeta,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

MAX_QUERY_LIMIT = 500
DEFAULT_QUERY_LIMIT = 100


@dataclass
class AuditEvent:
    """A security-relevant fact, emitted by primitives and persisted by the sink."""

    event_type: AuditEventType
    success: bool = True
    credential_id: Optional[str] = None
    target: Optional[str] = None
    device_id: Optional[str] = None
    meta: Optional[RequestMeta] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None


class AuditEmitter(Protocol):
    def record(self, event: AuditEvent) -> Optional[AuditRecord]:
        ...


class AuditStore(Protocol):
    def append_audit_record(self, record: AuditRecord) -> AuditRecord:
        ...

    def list_audit_records(
        self,
        *,
        credential_id: Optional[str] = None,
        event_types: Optional[Sequence[AuditEventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        ...

    def count_audit_records(
        self, event_types: Sequence[AuditEventType], *, since: Optional[datetime] = None
    ) -> int:
        ...

    def top_audit_targets(
        self,
        event_type: AuditEventType,
        *,
        since: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[Tuple[str, int]]:
        ...


@dataclass
class AuditQuery:
    credential_id: Optional[str] = None
    event_types: Optional[Sequence[AuditEventType]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = DEFAULT_QUERY_LIMIT

    @property
    def clamped_limit(self) -> int:
        return max(1, min(int(self.limit or DEFAULT_QUERY_LIMIT), MAX_QUERY_LIMIT))


@dataclass
class AuditStatistics:
    window_days: int
    permission_denied_count: int
    access_granted_count: int
    role_changes_count: int
    top_denied_targets: List[Tuple[str, int]]


class AuditSink:
    """Append-only audit trail.

    Recording never raises: a failed write is logged as
    ``audit_record_failed`` and the caller's operation proceeds.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(self, event: AuditEvent) -> Optional[AuditRecord]:
        meta = event.meta or RequestMeta()
        try:
            record = AuditRecord(
                id=new_id(),
                event_type=AuditEventType(event.event_type),
                success=event.success,
                credential_id=event.credential_id,
                target=event.target,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
                device_id=event.device_id,
                metadata=dict(event.metadata or {}),
                error_message=(
                    sanitize_error_message(event.error_message)
                    if event.error_message
                    else None
                ),
                created_at=utcnow(),
            )
            return self.store.append_audit_record(record)
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                event_type=getattr(event.event_type, "value", str(event.event_type)),
                error=str(exc),
            )
            return None

    def query(self, query: Optional[AuditQuery] = None) -> List[AuditRecord]:
        query = query or AuditQuery()
        return self.store.list_audit_records(
            credential_id=query.credential_id,
            event_types=query.event_types,
            since=query.since,
            until=query.until,
            limit=query.clamped_limit,
        )

    def statistics(self, window_days: int = 30) -> AuditStatistics:
        since = utcnow() - timedelta(days=max(1, window_days))
        return AuditStatistics(
            window_days=window_days,
            permission_denied_count=self.store.count_audit_records(
                [AuditEventType.PERMISSION_DENIED], since=since
            ),
            access_granted_count=self.store.count_audit_records(
                [AuditEventType.ACCESS_GRANTED], since=since
            ),
            role_changes_count=self.store.count_audit_records(
                list(ROLE_CHANGE_EVENTS), since=since
            ),
            top_denied_targets=self.store.top_audit_targets(
                AuditEventType.PERMISSION_DENIED, since=since, limit=10
            ),
        )
