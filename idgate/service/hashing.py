from __future__ import annotations

import hashlib
import hmac
from typing import Tuple

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError

from idgate.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """argon2id password hashing with constant-time verification."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False


def digest_secret(secret: str) -> str:
    """sha256 hex digest used to persist bearer and reset secrets."""

    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def secrets_match(expected_digest: str, secret: str) -> bool:
    return hmac.compare_digest(expected_digest, digest_secret(secret))
