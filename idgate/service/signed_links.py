"""Signed, time-limited link parameters for email verification.

A link carries the account id, a hash binding it to the account's email, an
absolute unix expiry and an HMAC-SHA256 signature over all three plus the
route name. Signing and checking are plain functions of (key, payload) so
they can be exercised without a web framework.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol
from urllib.parse import urlencode

from idgate.logging import get_logger
from idgate.service.errors import AccountNotFoundError, InvalidLinkError
from idgate.service.primitives import Clock, SystemClock
from idgate.storage.models import Account

VERIFY_ROUTE = "verification.verify"


def identifier_hash(identifier: str) -> str:
    return hashlib.sha1(identifier.encode("utf-8")).hexdigest()


def canonicalize(route: str, account_id: int, id_hash: str, expires: int) -> str:
    query = urlencode(
        [("expires", str(expires)), ("hash", id_hash), ("id", str(account_id))]
    )
    return f"{route}?{query}"


def sign(secret_key: str, payload: str) -> str:
    return hmac.new(
        secret_key.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_signature(secret_key: str, payload: str, signature: str) -> bool:
    expected = sign(secret_key, payload)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


@dataclass(frozen=True)
class SignedLink:
    id: int
    hash: str
    expires: int
    signature: str

    def query(self) -> str:
        return urlencode({"expires": self.expires, "signature": self.signature})

    def url(self, base_url: str, prefix: str = "/v1/email/verify") -> str:
        return f"{base_url.rstrip('/')}{prefix}/{self.id}/{self.hash}?{self.query()}"


class AccountLookup(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]:
        ...


class SignedLinkVerifier:
    def __init__(
        self,
        secret_key: str,
        accounts: AccountLookup,
        *,
        clock: Optional[Clock] = None,
        route: str = VERIFY_ROUTE,
    ) -> None:
        if not secret_key:
            raise ValueError("secret_key is required")
        self._secret_key = secret_key
        self.accounts = accounts
        self.clock = clock or SystemClock()
        self.route = route
        self.logger = get_logger(__name__)

    def build_link(self, account_id: int, id_hash: str, ttl: timedelta) -> SignedLink:
        expires = int((self.clock.now() + ttl).timestamp())
        payload = canonicalize(self.route, account_id, id_hash, expires)
        return SignedLink(
            id=account_id,
            hash=id_hash,
            expires=expires,
            signature=sign(self._secret_key, payload),
        )

    def build_for_account(self, account: Account, ttl: timedelta) -> SignedLink:
        if not account.email:
            raise ValueError("account has no email to bind the link to")
        return self.build_link(account.id, identifier_hash(account.email), ttl)

    def _reject(self, account_id: int, reason: str) -> InvalidLinkError:
        self.logger.warning("signed_link_rejected", account_id=account_id, reason=reason)
        return InvalidLinkError(reason)

    def verify(self, account_id: int, id_hash: str, expires: int, signature: str) -> Account:
        """Check signature, then expiry, then the email binding.

        Every failure surfaces as the same :class:`InvalidLinkError`; the
        failed step is only kept on its ``reason`` attribute.
        """

        payload = canonicalize(self.route, account_id, id_hash, expires)
        if not verify_signature(self._secret_key, payload, signature):
            raise self._reject(account_id, "signature")
        if int(self.clock.now().timestamp()) > expires:
            raise self._reject(account_id, "expired")
        account = self.accounts.get_account(account_id)
        if account is None:
            raise AccountNotFoundError("User not found")
        if not account.email or not hmac.compare_digest(
            identifier_hash(account.email).encode("utf-8"), id_hash.encode("utf-8")
        ):
            raise self._reject(account_id, "binding")
        return account
