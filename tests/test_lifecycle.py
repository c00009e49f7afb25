"""Tests for the account state machine."""

import pytest

from idgate.service.errors import (
    AccountNotFoundError,
    AlreadySuspendedError,
    NotSuspendedError,
    SelfOperationForbiddenError,
    ValidationError,
)
from idgate.service.lifecycle import ACTIVE, SUSPENDED, AccountLifecycleManager, is_authenticable
from idgate.service.tokens import TokenStore


@pytest.fixture
def tokens(store, clock):
    return TokenStore(store, clock=clock)


@pytest.fixture
def admin(store):
    return store.create_account("root", "root@example.com", role="super_admin")


@pytest.fixture
def member(store):
    return store.create_account("alice", "alice@example.com", role="admin", permissions=["manage_users"])


class TestStates:
    def test_new_account_is_active(self, member):
        assert AccountLifecycleManager.state(member) == ACTIVE
        assert is_authenticable(member)

    def test_missing_account_is_not_authenticable(self):
        assert not is_authenticable(None)

    def test_get_active_hides_suspended(self, lifecycle, admin, member):
        lifecycle.suspend(member.id, admin.id)
        with pytest.raises(AccountNotFoundError):
            lifecycle.get_active(member.id)
        assert AccountLifecycleManager.state(lifecycle.get(member.id)) == SUSPENDED


class TestSuspendRestore:
    def test_suspend_revokes_every_token(self, lifecycle, tokens, store, admin, member):
        tokens.issue(member.id, "a")
        tokens.issue(member.id, "b")
        assert lifecycle.suspend(member.id, admin.id) == 2
        assert store.list_account_tokens(member.id) == []

    def test_suspend_twice_conflicts(self, lifecycle, admin, member):
        lifecycle.suspend(member.id, admin.id)
        with pytest.raises(AlreadySuspendedError):
            lifecycle.suspend(member.id, admin.id)

    def test_cannot_suspend_self(self, lifecycle, admin):
        with pytest.raises(SelfOperationForbiddenError) as exc:
            lifecycle.suspend(admin.id, admin.id)
        assert exc.value.message == "You cannot deactivate your own account"

    def test_restore_clears_tombstone(self, lifecycle, admin, member):
        lifecycle.suspend(member.id, admin.id)
        restored = lifecycle.restore(member.id)
        assert restored.deleted_at is None
        assert lifecycle.get_active(member.id).id == member.id

    def test_restore_active_conflicts(self, lifecycle, member):
        with pytest.raises(NotSuspendedError):
            lifecycle.restore(member.id)

    def test_restore_does_not_bring_tokens_back(self, lifecycle, tokens, store, admin, member):
        tokens.issue(member.id, "a")
        lifecycle.suspend(member.id, admin.id)
        lifecycle.restore(member.id)
        assert store.list_account_tokens(member.id) == []

    def test_suspend_missing(self, lifecycle, admin):
        with pytest.raises(AccountNotFoundError):
            lifecycle.suspend(999, admin.id)


class TestPurge:
    def test_purge_removes_row_and_tokens(self, lifecycle, tokens, store, admin, member):
        tokens.issue(member.id, "a")
        assert lifecycle.purge(member.id, admin.id) == 1
        assert store.get_account(member.id) is None
        assert store.get_password_record(member.id) is None

    def test_purge_suspended_account(self, lifecycle, admin, member):
        lifecycle.suspend(member.id, admin.id)
        lifecycle.purge(member.id, admin.id)
        with pytest.raises(AccountNotFoundError):
            lifecycle.get(member.id)

    def test_cannot_purge_self(self, lifecycle, admin):
        with pytest.raises(SelfOperationForbiddenError):
            lifecycle.purge(admin.id, admin.id)

    def test_purge_missing(self, lifecycle, admin):
        with pytest.raises(AccountNotFoundError):
            lifecycle.purge(999, admin.id)


class TestProfile:
    def test_email_change_clears_verification(self, lifecycle, store, clock, member):
        store.update_account(member.id, email_verified_at=clock.now())
        updated, changed = lifecycle.update_profile(member.id, email="ALICE@new.example.com")
        assert changed
        assert updated.email == "alice@new.example.com"
        assert updated.email_verified_at is None

    def test_same_email_keeps_verification(self, lifecycle, store, clock, member):
        store.update_account(member.id, email_verified_at=clock.now())
        updated, changed = lifecycle.update_profile(member.id, email="alice@example.com", name="Alice")
        assert not changed
        assert updated.email_verified_at == clock.now()
        assert updated.name == "Alice"

    def test_rejects_non_profile_fields(self, lifecycle, member):
        with pytest.raises(ValidationError):
            lifecycle.update_profile(member.id, role="super_admin")

    def test_record_login_and_mark_verified(self, lifecycle, clock, member):
        lifecycle.record_login(member.id)
        verified = lifecycle.mark_email_verified(member.id)
        assert verified.last_login_at == clock.now()
        assert verified.email_verified_at == clock.now()


class TestRolesAndPermissions:
    def test_change_to_user_clears_permissions(self, lifecycle, member):
        updated = lifecycle.change_role(member.id, "user", ["manage_users"])
        assert updated.role == "user"
        assert updated.permissions == []

    def test_unknown_role(self, lifecycle, member):
        with pytest.raises(ValidationError):
            lifecycle.change_role(member.id, "owner")

    def test_unknown_permission(self, lifecycle, member):
        with pytest.raises(ValidationError):
            lifecycle.set_permissions(member.id, ["fly"])

    def test_grant_and_revoke(self, lifecycle, member):
        granted = lifecycle.grant_permission(member.id, "create_users")
        assert granted.permissions == ["manage_users", "create_users"]
        assert lifecycle.grant_permission(member.id, "create_users").permissions == granted.permissions
        revoked = lifecycle.revoke_permission(member.id, "manage_users")
        assert revoked.permissions == ["create_users"]

    def test_user_role_ignores_permission_writes(self, lifecycle, store):
        plain = store.create_account("bob", "bob@example.com")
        assert lifecycle.set_permissions(plain.id, ["manage_users"]).permissions == []
