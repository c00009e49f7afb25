from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Tuple

from idgate.logging import get_logger
from idgate.service.errors import InvalidTokenError, UnauthenticatedError
from idgate.service.hashing import digest_secret, secrets_match
from idgate.service.lifecycle import is_authenticable
from idgate.service.primitives import Clock, RandomSource, SystemClock, SystemRandomSource
from idgate.storage.models import Account, SessionToken

TOKEN_SEPARATOR = "|"
_SECRET_BYTES = 30


class TokenBackend(Protocol):
    def create_token(
        self,
        account_id: int,
        name: str,
        token_hash: str,
        *,
        expires_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> SessionToken:
        ...

    def get_token(self, token_id: int) -> Optional[SessionToken]:
        ...

    def touch_token(self, token_id: int, used_at: datetime) -> None:
        ...

    def delete_token(self, token_id: int) -> bool:
        ...

    def list_account_tokens(self, account_id: int) -> List[SessionToken]:
        ...

    def delete_account_tokens(self, account_id: int, except_token_id: Optional[int] = None) -> int:
        ...

    def delete_expired_tokens(self, now: datetime) -> int:
        ...

    def get_account(self, account_id: int) -> Optional[Account]:
        ...


@dataclass(frozen=True)
class IssuedToken:
    token_id: int
    secret: str
    expires_at: Optional[datetime] = None

    @property
    def plaintext(self) -> str:
        """Wire form handed to the client exactly once."""

        return f"{self.token_id}{TOKEN_SEPARATOR}{self.secret}"


def parse_token(token_string: str) -> Tuple[int, str]:
    raw_id, sep, secret = (token_string or "").partition(TOKEN_SEPARATOR)
    if not sep or not secret or not raw_id.isdigit() or not raw_id.isascii():
        raise InvalidTokenError("Invalid token")
    token_id = int(raw_id)
    if token_id <= 0:
        raise InvalidTokenError("Invalid token")
    return token_id, secret


class TokenStore:
    """Bearer token issuance, validation and revocation.

    Only a sha256 digest of each secret is stored. Validation re-reads the
    owning account every time so a suspension takes effect on the next call.
    """

    def __init__(
        self,
        store: TokenBackend,
        *,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.random = random or SystemRandomSource()
        self.logger = get_logger(__name__)

    def issue(
        self, account_id: int, label: str, ttl: Optional[timedelta] = None
    ) -> IssuedToken:
        secret = self.random.token_urlsafe(_SECRET_BYTES)
        now = self.clock.now()
        expires_at = now + ttl if ttl is not None else None
        token = self.store.create_token(
            account_id,
            label,
            digest_secret(secret),
            expires_at=expires_at,
            created_at=now,
        )
        self.logger.info(
            "token_issued",
            account_id=account_id,
            token_id=token.id,
            label=label,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return IssuedToken(token_id=token.id, secret=secret, expires_at=expires_at)

    def resolve(self, token_string: str) -> Tuple[Account, SessionToken]:
        token_id, secret = parse_token(token_string)
        token = self.store.get_token(token_id)
        if token is None or not secrets_match(token.token_hash, secret):
            self.logger.info("token_rejected", token_id=token_id, reason="unknown")
            raise InvalidTokenError("Invalid token")
        now = self.clock.now()
        if token.expires_at is not None and now >= token.expires_at:
            self.logger.info("token_rejected", token_id=token_id, reason="expired")
            raise InvalidTokenError("Token expired")
        account = self.store.get_account(token.account_id)
        if not is_authenticable(account):
            self.logger.warning(
                "token_rejected", token_id=token_id, reason="account_not_authenticable"
            )
            raise UnauthenticatedError("Account is not active")
        self.store.touch_token(token_id, now)
        return account, token

    def validate(self, token_string: str) -> Account:
        account, _ = self.resolve(token_string)
        return account

    def revoke(self, token_id: int) -> None:
        if self.store.delete_token(token_id):
            self.logger.info("token_revoked", token_id=token_id)

    def revoke_all(self, account_id: int, *, except_token_id: Optional[int] = None) -> int:
        count = self.store.delete_account_tokens(account_id, except_token_id=except_token_id)
        self.logger.info(
            "tokens_revoked",
            account_id=account_id,
            count=count,
            kept_token_id=except_token_id,
        )
        return count

    def list_tokens(self, account_id: int) -> List[SessionToken]:
        return self.store.list_account_tokens(account_id)

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_tokens(self.clock.now())
        if removed:
            self.logger.info("expired_tokens_swept", count=removed)
        return removed
