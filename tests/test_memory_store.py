"""Tests for the in-memory store and its JSON snapshot."""

from datetime import datetime, timedelta, timezone

import pytest

from idgate.storage.errors import ConstraintViolation
from idgate.storage.memory import MemoryStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestUniqueness:
    def test_duplicate_username(self, store):
        store.create_account("alice", "alice@example.com")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_account("alice", "other@example.com")
        assert exc.value.detail == {"field": "username"}

    def test_duplicate_email_ignores_case(self, store):
        store.create_account("alice", "alice@example.com")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_account("bob", "ALICE@example.com")
        assert exc.value.detail == {"field": "email"}

    def test_update_into_taken_phone(self, store):
        store.create_account("alice", phone="+100")
        bob = store.create_account("bob", phone="+200")
        with pytest.raises(ConstraintViolation):
            store.update_account(bob.id, phone="+100")

    def test_update_rejects_unknown_field(self, store):
        alice = store.create_account("alice")
        with pytest.raises(ValueError):
            store.update_account(alice.id, deleted_at=NOW)


class TestCopies:
    def test_returned_accounts_are_detached(self, store):
        alice = store.create_account("alice", permissions=["manage_users"])
        alice.permissions.append("delete_users")
        alice.role = "super_admin"
        fresh = store.get_account(alice.id)
        assert fresh.permissions == ["manage_users"]
        assert fresh.role == "user"


class TestAtomicLifecycle:
    def test_suspend_drops_tokens(self, store):
        alice = store.create_account("alice")
        store.create_token(alice.id, "a", "h1")
        store.create_token(alice.id, "b", "h2")
        assert store.suspend_account(alice.id, NOW) == 2
        assert store.get_account(alice.id).deleted_at == NOW
        assert store.list_account_tokens(alice.id) == []

    def test_suspend_missing_returns_none(self, store):
        assert store.suspend_account(42, NOW) is None
        assert store.purge_account(42) is None

    def test_purge_drops_credentials(self, store):
        alice = store.create_account("alice")
        store.save_password(alice.id, "hash", "argon2id")
        store.purge_account(alice.id)
        assert store.get_password_record(alice.id) is None

    def test_token_for_missing_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_token(99, "x", "h")


class TestResetRecords:
    def test_replace_keeps_one_record(self, store):
        store.replace_reset_record("alice@example.com", "h1", NOW)
        store.replace_reset_record("ALICE@example.com", "h2", NOW + timedelta(minutes=1))
        assert store.get_reset_record("alice@example.com").token_hash == "h2"
        assert len(store.reset_records) == 1

    def test_consume_is_conditional(self, store):
        store.replace_reset_record("alice@example.com", "h1", NOW)
        assert not store.consume_reset_record("alice@example.com", "stale")
        assert store.consume_reset_record("alice@example.com", "h1")
        assert not store.consume_reset_record("alice@example.com", "h1")

    def test_consume_with_password_is_all_or_nothing(self, store):
        account = store.create_account("alice", "alice@example.com")
        store.replace_reset_record("alice@example.com", "h1", NOW)
        assert not store.consume_reset_and_set_password("alice@example.com", "stale", account.id, "p", "argon2")
        assert store.get_password_record(account.id) is None
        assert store.consume_reset_and_set_password("alice@example.com", "h1", account.id, "p", "argon2")
        assert store.get_password_record(account.id) == ("p", "argon2")
        assert store.get_reset_record("alice@example.com") is None

    def test_consume_with_password_for_missing_account(self, store):
        store.replace_reset_record("ghost@example.com", "h1", NOW)
        with pytest.raises(ConstraintViolation):
            store.consume_reset_and_set_password("ghost@example.com", "h1", 99, "p", "argon2")
        assert store.get_reset_record("ghost@example.com") is not None


class TestListing:
    def test_active_only_fills_the_page(self, store):
        first = store.create_account("alice")
        second = store.create_account("bob")
        store.create_account("carol")
        store.suspend_account(first.id, NOW)
        store.suspend_account(second.id, NOW)
        active = store.list_accounts(limit=1, include_suspended=False)
        assert [a.username for a in active] == ["carol"]
        assert len(store.list_accounts(limit=2)) == 2


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        alice = first.create_account("alice", "alice@example.com", email_verified_at=NOW)
        first.save_password(alice.id, "hash", "argon2id")
        token = first.create_token(alice.id, "laptop", "digest", expires_at=NOW + timedelta(hours=1))
        first.replace_reset_record("alice@example.com", "reset-digest", NOW)

        second = MemoryStore(fs_root=str(tmp_path))
        reloaded = second.get_account(alice.id)
        assert reloaded.email_verified_at == NOW
        assert second.get_password_record(alice.id) == ("hash", "argon2id")
        assert second.get_token(token.id).expires_at == NOW + timedelta(hours=1)
        assert second.get_reset_record("alice@example.com").token_hash == "reset-digest"
        # Sequences continue past persisted ids
        assert second.create_account("bob").id == alice.id + 1

    def test_persist_disabled_writes_nothing(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "unused"), persist=False)
        store.create_account("alice")
        assert not (tmp_path / "unused").exists()
