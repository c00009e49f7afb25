"""Tests for single-use password reset tokens."""

from datetime import timedelta

import pytest

from idgate.service.errors import AccountNotFoundError, InvalidResetTokenError
from idgate.service.password_reset import PasswordResetTokenStore


@pytest.fixture
def resets(store, clock):
    return PasswordResetTokenStore(store, clock=clock, ttl=timedelta(minutes=60))


@pytest.fixture
def account(store):
    return store.create_account("alice", "alice@example.com")


class TestCreate:
    def test_token_is_64_hex_chars(self, resets, account):
        token = resets.create(account.email)
        assert len(token) == 64
        int(token, 16)

    def test_plaintext_not_persisted(self, resets, store, account):
        token = resets.create(account.email)
        assert store.get_reset_record(account.email).token_hash != token

    def test_new_token_supersedes_previous(self, resets, account):
        first = resets.create(account.email)
        second = resets.create(account.email)
        with pytest.raises(InvalidResetTokenError):
            resets.verify_and_consume(account.email, first)
        assert resets.verify_and_consume(account.email, second).id == account.id

    def test_email_is_case_insensitive(self, resets, account):
        token = resets.create("Alice@Example.com")
        assert resets.verify_and_consume("alice@example.com", token).id == account.id


class TestVerifyAndConsume:
    def test_single_use(self, resets, account):
        token = resets.create(account.email)
        resets.verify_and_consume(account.email, token)
        with pytest.raises(InvalidResetTokenError):
            resets.verify_and_consume(account.email, token)

    def test_wrong_token_keeps_record(self, resets, account):
        token = resets.create(account.email)
        with pytest.raises(InvalidResetTokenError):
            resets.verify_and_consume(account.email, "0" * 64)
        assert resets.verify_and_consume(account.email, token).id == account.id

    def test_expires_exactly_at_ttl(self, resets, clock, account):
        token = resets.create(account.email)
        clock.advance(minutes=60)
        with pytest.raises(InvalidResetTokenError):
            resets.verify_and_consume(account.email, token)

    def test_expired_record_is_removed(self, resets, store, clock, account):
        token = resets.create(account.email)
        clock.advance(minutes=61)
        with pytest.raises(InvalidResetTokenError):
            resets.verify_and_consume(account.email, token)
        assert store.get_reset_record(account.email) is None

    def test_just_before_expiry_is_valid(self, resets, clock, account):
        token = resets.create(account.email)
        clock.advance(minutes=59, seconds=59)
        assert resets.verify_and_consume(account.email, token).id == account.id

    def test_unknown_email(self, resets):
        with pytest.raises(InvalidResetTokenError):
            resets.verify_and_consume("nobody@example.com", "0" * 64)

    def test_suspended_account(self, resets, store, clock, account):
        token = resets.create(account.email)
        store.suspend_account(account.id, clock.now())
        with pytest.raises(AccountNotFoundError) as exc:
            resets.verify_and_consume(account.email, token)
        assert exc.value.status_code == 400

    def test_sweep_expired(self, resets, store, clock, account):
        resets.create(account.email)
        other = store.create_account("bob", "bob@example.com")
        clock.advance(minutes=30)
        resets.create(other.email)
        clock.advance(minutes=31)
        assert resets.sweep_expired() == 1
        assert store.get_reset_record(account.email) is None
        assert store.get_reset_record(other.email) is not None


class TestCredentialHandoff:
    def test_check_does_not_consume(self, resets, store, account):
        token = resets.create(account.email)
        assert resets.check(account.email, token).id == account.id
        assert store.get_reset_record(account.email) is not None

    def test_credential_lands_with_consume(self, resets, store, account):
        token = resets.create(account.email)
        resets.verify_and_consume(account.email, token, ("new-hash", "argon2"))
        assert store.get_password_record(account.id) == ("new-hash", "argon2")
        assert store.get_reset_record(account.email) is None

    def test_superseded_token_writes_nothing(self, resets, store, account):
        first = resets.create(account.email)
        resets.create(account.email)
        with pytest.raises(InvalidResetTokenError):
            resets.verify_and_consume(account.email, first, ("new-hash", "argon2"))
        assert store.get_password_record(account.id) is None
