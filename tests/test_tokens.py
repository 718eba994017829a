from datetime import timedelta

import pytest

from idwarden.service.errors import AuthenticationError
from idwarden.service.hashing import SecretHasher
from idwarden.service.tokens import TokenLedger
from idwarden.storage.models import AuditEventType, RequestMeta, utcnow


@pytest.fixture
def ledger(memory_store, settings, audit_events):
    return TokenLedger(memory_store, SecretHasher(settings), audit_events)


@pytest.fixture
def credential(memory_store):
    return memory_store.create_credential("alice", "hash", email="alice@example.com")


def _reasons(audit_events):
    return [
        e.metadata.get("reason")
        for e in audit_events.of_type(AuditEventType.REFRESH_TOKEN_USED)
        if not e.success
    ]


class TestIssue:
    def test_secret_is_not_stored(self, ledger, credential, memory_store):
        issued = ledger.issue(credential.id, device_id="phone", meta=RequestMeta(ip_address="10.0.0.1"))

        stored = memory_store.get_refresh_record(issued.record.id)
        assert stored.token_hash != issued.secret
        assert stored.device_id == "phone"
        assert stored.ip_address == "10.0.0.1"
        assert stored.expires_at - stored.created_at == timedelta(days=7)

    def test_issue_is_audited(self, ledger, credential, audit_events):
        ledger.issue(credential.id)
        assert len(audit_events.of_type(AuditEventType.REFRESH_TOKEN_ISSUED)) == 1


class TestRotate:
    """Each refresh secret can be exchanged exactly once."""

    def test_rotation_replaces_secret(self, ledger, credential, memory_store):
        first = ledger.issue(credential.id)
        second = ledger.rotate(first.secret)

        assert second.secret != first.secret
        assert second.record.credential_id == credential.id
        assert memory_store.get_refresh_record(first.record.id).is_active is False
        assert [r.id for r in ledger.list_active_sessions(credential.id)] == [second.record.id]

    def test_replayed_secret_rejected_successor_still_valid(self, ledger, credential, audit_events):
        t0 = ledger.issue(credential.id)
        t1 = ledger.rotate(t0.secret)

        with pytest.raises(AuthenticationError):
            ledger.rotate(t0.secret)

        t2 = ledger.rotate(t1.secret)
        assert t2.record.credential_id == credential.id
        assert _reasons(audit_events) == ["inactive"]

    def test_unknown_and_missing_secrets(self, ledger, audit_events):
        with pytest.raises(AuthenticationError):
            ledger.rotate("")
        with pytest.raises(AuthenticationError):
            ledger.rotate("never-issued")
        assert _reasons(audit_events) == ["missing", "unknown"]

    def test_expired_secret_rejected(self, ledger, credential, memory_store, audit_events):
        issued = ledger.issue(credential.id)
        with memory_store._data_lock:
            memory_store.refresh_records[issued.record.id].expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(AuthenticationError):
            ledger.rotate(issued.secret)
        assert _reasons(audit_events) == ["expired"]

    def test_device_binding(self, ledger, credential, audit_events):
        issued = ledger.issue(credential.id, device_id="phone")

        with pytest.raises(AuthenticationError):
            ledger.rotate(issued.secret, device_id="laptop")
        assert _reasons(audit_events) == ["device_mismatch"]

        # omitting the device id keeps the original binding
        rotated = ledger.rotate(issued.secret)
        assert rotated.record.device_id == "phone"

    def test_unbound_token_adopts_presented_device(self, ledger, credential):
        issued = ledger.issue(credential.id)
        rotated = ledger.rotate(issued.secret, device_id="tablet")
        assert rotated.record.device_id == "tablet"

    def test_lost_race_is_rejected(self, ledger, credential, memory_store, monkeypatch, audit_events):
        issued = ledger.issue(credential.id)
        monkeypatch.setattr(memory_store, "rotate_refresh_record", lambda record_id, successor: None)

        with pytest.raises(AuthenticationError):
            ledger.rotate(issued.secret)
        assert _reasons(audit_events) == ["concurrent_rotation"]


class TestRevoke:
    def test_revoke_single(self, ledger, credential, audit_events):
        issued = ledger.issue(credential.id)
        assert ledger.revoke(issued.record.id, credential_id=credential.id) is True
        assert ledger.revoke(issued.record.id, credential_id=credential.id) is False
        with pytest.raises(AuthenticationError):
            ledger.rotate(issued.secret)
        assert len(audit_events.of_type(AuditEventType.REFRESH_TOKEN_REVOKED)) == 1

    def test_revoke_all_and_by_device(self, ledger, credential):
        ledger.issue(credential.id, device_id="phone")
        ledger.issue(credential.id, device_id="laptop")
        ledger.issue(credential.id, device_id="laptop")

        assert ledger.revoke_for_device(credential.id, "laptop") == 2
        assert ledger.revoke_all_for_subject(credential.id) == 1
        assert ledger.list_active_sessions(credential.id) == []

    def test_sweep_removes_expired(self, ledger, credential, memory_store):
        issued = ledger.issue(credential.id)
        with memory_store._data_lock:
            memory_store.refresh_records[issued.record.id].expires_at = utcnow() - timedelta(days=1)
        ledger.issue(credential.id)

        assert ledger.sweep_expired() == 1
