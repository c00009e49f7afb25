from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from idgate.logging import email_digest, get_logger
from idgate.service.errors import AccountNotFoundError, InvalidResetTokenError
from idgate.service.hashing import digest_secret, secrets_match
from idgate.service.lifecycle import is_authenticable
from idgate.service.primitives import Clock, RandomSource, SystemClock, SystemRandomSource
from idgate.storage.models import Account, PasswordResetRecord

DEFAULT_RESET_TTL = timedelta(minutes=60)
_TOKEN_BYTES = 32


class ResetBackend(Protocol):
    def replace_reset_record(
        self, email: str, token_hash: str, created_at: datetime
    ) -> PasswordResetRecord:
        ...

    def get_reset_record(self, email: str) -> Optional[PasswordResetRecord]:
        ...

    def consume_reset_record(self, email: str, token_hash: str) -> bool:
        ...

    def consume_reset_and_set_password(
        self,
        email: str,
        token_hash: str,
        account_id: int,
        password_hash: str,
        password_algo: str,
    ) -> bool:
        ...

    def delete_reset_records_before(self, cutoff: datetime) -> int:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...


class PasswordResetTokenStore:
    """Single-use password reset tokens, at most one live token per email."""

    def __init__(
        self,
        store: ResetBackend,
        *,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
        ttl: timedelta = DEFAULT_RESET_TTL,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.random = random or SystemRandomSource()
        self.ttl = ttl
        self.logger = get_logger(__name__)

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    def create(self, email: str) -> str:
        token = self.random.token_bytes(_TOKEN_BYTES).hex()
        self.store.replace_reset_record(
            self._key(email), digest_secret(token), self.clock.now()
        )
        self.logger.info("password_reset_token_created", email_hash=email_digest(email))
        return token

    def _expired(self, record: PasswordResetRecord) -> bool:
        return self.clock.now() - record.created_at >= self.ttl

    def _reject(self, key: str, reason: str) -> InvalidResetTokenError:
        self.logger.warning("password_reset_rejected", email_hash=email_digest(key), reason=reason)
        return InvalidResetTokenError("This password reset token is invalid.")

    def _live_record(self, key: str, token: str) -> tuple[PasswordResetRecord, Account]:
        record = self.store.get_reset_record(key)
        if record is None or not secrets_match(record.token_hash, token):
            raise self._reject(key, "mismatch")
        if self._expired(record):
            self.store.consume_reset_record(key, record.token_hash)
            raise self._reject(key, "expired")
        account = self.store.get_account_by_email(key)
        if not is_authenticable(account):
            raise AccountNotFoundError(
                "We can't find a user with that email address.", status_code=400
            )
        return record, account

    def check(self, email: str, token: str) -> Account:
        """Run every verification step without consuming the token."""
        _, account = self._live_record(self._key(email), token)
        return account

    def verify_and_consume(
        self, email: str, token: str, credential: Optional[tuple[str, str]] = None
    ) -> Account:
        """Verify ``token`` and delete its record.

        When ``credential`` (hash, algorithm) is given it is stored in the
        same store operation that deletes the record, so the token is spent
        exactly when the new password lands.
        """
        key = self._key(email)
        record, account = self._live_record(key, token)
        # Conditional delete: a concurrent consumer or a newer token wins
        if credential is None:
            consumed = self.store.consume_reset_record(key, record.token_hash)
        else:
            consumed = self.store.consume_reset_and_set_password(
                key, record.token_hash, account.id, *credential
            )
        if not consumed:
            raise self._reject(key, "superseded")
        self.logger.info(
            "password_reset_token_consumed", account_id=account.id, email_hash=email_digest(key)
        )
        return account

    def sweep_expired(self) -> int:
        return self.store.delete_reset_records_before(self.clock.now() - self.ttl)
