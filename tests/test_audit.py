from datetime import timedelta
from unittest.mock import MagicMock

from idwarden.logging import (
    _add_request_context,
    _redact_pii,
    bind_subject,
    sanitize_error_message,
    set_correlation_id,
)
from idwarden.service.audit import AuditEvent, AuditQuery, AuditSink
from idwarden.storage.models import AuditEventType, AuditRecord, RequestMeta, new_id, utcnow


class TestAuditRecording:
    def test_record_persists_request_meta(self, memory_store):
        sink = AuditSink(memory_store)
        record = sink.record(
            AuditEvent(
                AuditEventType.LOGIN_SUCCESS,
                credential_id="c1",
                meta=RequestMeta(ip_address="10.0.0.1", user_agent="pytest"),
                metadata={"method": "password"},
            )
        )

        stored = memory_store.list_audit_records(credential_id="c1")
        assert stored[0].id == record.id
        assert stored[0].ip_address == "10.0.0.1"
        assert stored[0].user_agent == "pytest"
        assert stored[0].metadata == {"method": "password"}

    def test_store_failure_never_propagates(self):
        store = MagicMock()
        store.append_audit_record.side_effect = RuntimeError("disk full")
        sink = AuditSink(store)

        assert sink.record(AuditEvent(AuditEventType.LOGIN_FAILED, success=False)) is None
        store.append_audit_record.assert_called_once()

    def test_error_message_sanitized(self, memory_store):
        sink = AuditSink(memory_store)
        record = sink.record(
            AuditEvent(
                AuditEventType.REGISTER_FAILED,
                success=False,
                error_message="insert failed at /srv/idwarden/state.json",
            )
        )
        assert "/srv/idwarden" not in record.error_message


class TestAuditQueries:
    def _seed(self, store, event_type, count, *, target=None, age=timedelta(0)):
        for _ in range(count):
            store.append_audit_record(
                AuditRecord(
                    id=new_id(),
                    event_type=event_type,
                    target=target,
                    created_at=utcnow() - age,
                )
            )

    def test_query_filters_by_event_type(self, memory_store):
        self._seed(memory_store, AuditEventType.LOGIN_SUCCESS, 2)
        self._seed(memory_store, AuditEventType.ROLE_CREATED, 1)
        sink = AuditSink(memory_store)

        records = sink.query(AuditQuery(event_types=[AuditEventType.ROLE_CREATED]))
        assert [r.event_type for r in records] == [AuditEventType.ROLE_CREATED]

    def test_limit_is_clamped(self):
        assert AuditQuery(limit=10_000).clamped_limit == 500
        assert AuditQuery(limit=-3).clamped_limit == 1
        assert AuditQuery(limit=0).clamped_limit == 100

    def test_statistics_window(self, memory_store):
        self._seed(memory_store, AuditEventType.PERMISSION_DENIED, 3, target="roles.create")
        self._seed(memory_store, AuditEventType.PERMISSION_DENIED, 1, target="audit.query")
        self._seed(memory_store, AuditEventType.ACCESS_GRANTED, 2, target="roles.list")
        self._seed(memory_store, AuditEventType.ROLE_ASSIGNED, 1)
        self._seed(memory_store, AuditEventType.ROLE_DELETED, 1)
        # outside a 30 day window
        self._seed(
            memory_store,
            AuditEventType.PERMISSION_DENIED,
            5,
            target="roles.create",
            age=timedelta(days=45),
        )

        stats = AuditSink(memory_store).statistics(window_days=30)

        assert stats.permission_denied_count == 4
        assert stats.access_granted_count == 2
        assert stats.role_changes_count == 2
        assert stats.top_denied_targets == [("roles.create", 3), ("audit.query", 1)]


class TestRedaction:
    def test_contact_and_secret_keys_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "x",
                "email": "alice@example.com",
                "refresh_token": "abcdefghijkl",
                "code": "1234",
                "code_length": 6,
                "error_code": "rate_limited",
            },
        )
        assert event["email"] == "al***om"
        assert event["refresh_token"] == "ab***kl"
        assert event["code"] == "***"
        assert event["code_length"] == 6
        assert event["error_code"] == "rate_limited"

    def test_dev_code_kept(self):
        event = _redact_pii(None, "info", {"dev_code": "123456"})
        assert event["dev_code"] == "123456"

    def test_sanitize_strips_sql_and_assignments(self):
        message = sanitize_error_message("password=hunter2 rejected")
        assert "hunter2" not in message
        assert sanitize_error_message("") == "An error occurred"

    def test_request_context_carries_subject_until_next_request(self):
        set_correlation_id("req-1")
        bind_subject("cred-42")
        event = _add_request_context(None, "info", {"event": "x"})
        assert event["correlation_id"] == "req-1"
        assert event["subject_id"] == "cred-42"

        set_correlation_id("req-2")
        event = _add_request_context(None, "info", {"event": "y"})
        assert event["correlation_id"] == "req-2"
        assert "subject_id" not in event
