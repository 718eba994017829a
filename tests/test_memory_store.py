"""Unit tests for the in-memory store.

Covers uniqueness constraints, the conditional state transitions used by
token rotation and challenge attempts, role assignment bounds, audit ordering
and JSON persistence.
"""

from datetime import timedelta

import pytest

from idwarden.storage.errors import ConstraintViolation
from idwarden.storage.memory import MemoryStore
from idwarden.storage.models import (
    AuditEventType,
    AuditRecord,
    Challenge,
    ChallengePurpose,
    RefreshRecord,
    new_id,
    utcnow,
)


def _credential(store, username="alice", email="alice@example.com", phone=None):
    return store.create_credential(username, "hash", email=email, phone=phone)


def _challenge(target="+8613800138000", purpose=ChallengePurpose.LOGIN, **kwargs):
    now = utcnow()
    defaults = dict(
        id=new_id(),
        target=target,
        purpose=purpose,
        code_hash="code-hash",
        expires_at=now + timedelta(minutes=5),
        created_at=now,
    )
    defaults.update(kwargs)
    return Challenge(**defaults)


class TestCredentials:
    """Credential uniqueness and updates."""

    def test_duplicate_username_rejected(self, memory_store):
        _credential(memory_store)
        with pytest.raises(ConstraintViolation) as exc_info:
            _credential(memory_store, email="other@example.com")
        assert exc_info.value.field == "username"

    def test_duplicate_email_rejected(self, memory_store):
        _credential(memory_store)
        with pytest.raises(ConstraintViolation) as exc_info:
            _credential(memory_store, username="bob")
        assert exc_info.value.field == "email"

    def test_missing_contact_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_credential("carol", "hash")

    def test_multiple_credentials_without_phone_allowed(self, memory_store):
        _credential(memory_store)
        second = _credential(memory_store, username="bob", email="bob@example.com")
        assert second.phone is None

    def test_reads_return_copies(self, memory_store):
        cred = _credential(memory_store)
        fetched = memory_store.get_credential(cred.id)
        fetched.username = "mutated"
        assert memory_store.get_credential(cred.id).username == "alice"

    def test_update_contact_rejects_taken_value(self, memory_store):
        alice = _credential(memory_store)
        _credential(memory_store, username="bob", email="bob@example.com")
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.update_contact(alice.id, "email", "bob@example.com", verified=True)
        assert exc_info.value.field == "email"

    def test_set_credential_active(self, memory_store):
        cred = _credential(memory_store)
        locked = memory_store.set_credential_active(cred.id, False)
        assert locked.is_active is False
        assert not memory_store.get_credential(cred.id).is_available


class TestRefreshRecords:
    """Rotation is a compare-and-swap on is_active."""

    def test_rotate_deactivates_predecessor(self, memory_store):
        cred = _credential(memory_store)
        first = memory_store.create_refresh_record(
            RefreshRecord.new(cred.id, "h1", timedelta(days=7))
        )
        successor = RefreshRecord.new(cred.id, "h2", timedelta(days=7))

        rotated = memory_store.rotate_refresh_record(first.id, successor)

        assert rotated.id == successor.id
        assert memory_store.get_refresh_record(first.id).is_active is False
        assert memory_store.get_refresh_record_by_hash("h2").is_active is True

    def test_second_rotation_of_same_record_loses(self, memory_store):
        cred = _credential(memory_store)
        first = memory_store.create_refresh_record(
            RefreshRecord.new(cred.id, "h1", timedelta(days=7))
        )
        assert memory_store.rotate_refresh_record(
            first.id, RefreshRecord.new(cred.id, "h2", timedelta(days=7))
        )
        assert (
            memory_store.rotate_refresh_record(
                first.id, RefreshRecord.new(cred.id, "h3", timedelta(days=7))
            )
            is None
        )
        assert memory_store.get_refresh_record_by_hash("h3") is None

    def test_deactivate_by_device(self, memory_store):
        cred = _credential(memory_store)
        memory_store.create_refresh_record(
            RefreshRecord.new(cred.id, "h1", timedelta(days=7), device_id="phone")
        )
        memory_store.create_refresh_record(
            RefreshRecord.new(cred.id, "h2", timedelta(days=7), device_id="laptop")
        )

        assert memory_store.deactivate_refresh_records(cred.id, device_id="phone") == 1
        remaining = memory_store.list_active_refresh_records(cred.id)
        assert [r.device_id for r in remaining] == ["laptop"]

    def test_list_active_excludes_expired(self, memory_store):
        cred = _credential(memory_store)
        expired = RefreshRecord.new(cred.id, "old", timedelta(days=7))
        expired.expires_at = utcnow() - timedelta(seconds=1)
        memory_store.create_refresh_record(expired)
        memory_store.create_refresh_record(RefreshRecord.new(cred.id, "new", timedelta(days=7)))

        active = memory_store.list_active_refresh_records(cred.id)
        assert [r.token_hash for r in active] == ["new"]
        assert memory_store.delete_expired_refresh_records() == 1


class TestChallenges:
    """Attempt counting never exceeds max_attempts."""

    def test_latest_unused_challenge_wins(self, memory_store):
        older = _challenge(created_at=utcnow() - timedelta(seconds=30))
        newer = _challenge()
        memory_store.create_challenge(older)
        memory_store.create_challenge(newer)

        latest = memory_store.get_latest_challenge(newer.target, ChallengePurpose.LOGIN)
        assert latest.id == newer.id

    def test_purpose_is_part_of_the_key(self, memory_store):
        memory_store.create_challenge(_challenge(purpose=ChallengePurpose.REGISTER))
        assert memory_store.get_latest_challenge("+8613800138000", ChallengePurpose.LOGIN) is None

    def test_increment_stops_at_max(self, memory_store):
        challenge = memory_store.create_challenge(_challenge(max_attempts=3))
        counts = [memory_store.increment_challenge_attempts(challenge.id) for _ in range(4)]
        assert counts == [1, 2, 3, None]
        assert memory_store.get_challenge(challenge.id).attempts == 3

    def test_mark_used_is_single_shot(self, memory_store):
        challenge = memory_store.create_challenge(_challenge())
        assert memory_store.mark_challenge_used(challenge.id) is True
        assert memory_store.mark_challenge_used(challenge.id) is False
        assert memory_store.increment_challenge_attempts(challenge.id) is None

    def test_expired_challenges_swept(self, memory_store):
        memory_store.create_challenge(_challenge(expires_at=utcnow() - timedelta(seconds=1)))
        memory_store.create_challenge(_challenge())
        assert memory_store.delete_expired_challenges() == 1


class TestRoles:
    """Role catalog and assignment bounds."""

    def test_remove_all_roles_rejected(self, memory_store):
        cred = _credential(memory_store)
        user = memory_store.create_role("USER")
        admin = memory_store.create_role("ADMIN")
        memory_store.add_credential_roles(cred.id, [user.id, admin.id])

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.remove_credential_roles(cred.id, [user.id, admin.id])
        assert exc_info.value.field == "roles"
        assert len(memory_store.list_credential_roles(cred.id)) == 2

    def test_remove_subset_allowed(self, memory_store):
        cred = _credential(memory_store)
        user = memory_store.create_role("USER")
        admin = memory_store.create_role("ADMIN")
        memory_store.add_credential_roles(cred.id, [user.id, admin.id])

        assert memory_store.remove_credential_roles(cred.id, [admin.id]) == [admin.id]
        assert [r.name for r in memory_store.list_credential_roles(cred.id)] == ["USER"]

    def test_add_is_idempotent(self, memory_store):
        cred = _credential(memory_store)
        role = memory_store.create_role("USER")
        assert memory_store.add_credential_roles(cred.id, [role.id]) == [role.id]
        assert memory_store.add_credential_roles(cred.id, [role.id]) == []

    def test_delete_assigned_role_rejected(self, memory_store):
        cred = _credential(memory_store)
        role = memory_store.create_role("EDITOR")
        memory_store.add_credential_roles(cred.id, [role.id])
        with pytest.raises(ConstraintViolation):
            memory_store.delete_role(role.id)

    def test_member_counts(self, memory_store):
        cred = _credential(memory_store)
        used = memory_store.create_role("USER")
        unused = memory_store.create_role("AUDITOR")
        memory_store.add_credential_roles(cred.id, [used.id])
        assert memory_store.role_member_counts() == {used.id: 1, unused.id: 0}


class TestAuditAndPersistence:
    """Audit ordering and JSON state round trip."""

    def test_audit_newest_first_with_limit(self, memory_store):
        base = utcnow()
        for offset in range(5):
            memory_store.append_audit_record(
                AuditRecord(
                    id=new_id(),
                    event_type=AuditEventType.LOGIN_SUCCESS,
                    created_at=base + timedelta(seconds=offset),
                    metadata={"n": offset},
                )
            )
        records = memory_store.list_audit_records(limit=2)
        assert [r.metadata["n"] for r in records] == [4, 3]

    def test_top_targets(self, memory_store):
        for target in ("roles.create", "roles.create", "audit.query"):
            memory_store.append_audit_record(
                AuditRecord(
                    id=new_id(),
                    event_type=AuditEventType.PERMISSION_DENIED,
                    target=target,
                    success=False,
                )
            )
        assert memory_store.top_audit_targets(AuditEventType.PERMISSION_DENIED) == [
            ("roles.create", 2),
            ("audit.query", 1),
        ]

    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        cred = _credential(store)
        role = store.create_role("USER")
        store.add_credential_roles(cred.id, [role.id])
        store.create_refresh_record(RefreshRecord.new(cred.id, "h1", timedelta(days=7)))
        store.create_challenge(_challenge())
        store.append_audit_record(
            AuditRecord(id=new_id(), event_type=AuditEventType.REGISTER_SUCCESS, credential_id=cred.id)
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_credential_by_email("alice@example.com").id == cred.id
        assert [r.name for r in reloaded.list_credential_roles(cred.id)] == ["USER"]
        assert reloaded.get_refresh_record_by_hash("h1").credential_id == cred.id
        assert reloaded.get_latest_challenge("+8613800138000", ChallengePurpose.LOGIN)
        assert reloaded.list_audit_records(credential_id=cred.id)[0].event_type is (
            AuditEventType.REGISTER_SUCCESS
        )

    def test_ping_checks_state_directory(self, tmp_path):
        MemoryStore().ping()
        MemoryStore(fs_root=str(tmp_path)).ping()
        assert (tmp_path / "state").is_dir()
