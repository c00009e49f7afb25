from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class RandomSource(Protocol):
    def token_bytes(self, n: int) -> bytes:
        ...

    def token_urlsafe(self, n: int) -> str:
        ...

    def choice(self, seq: str) -> str:
        ...

    def randbelow(self, n: int) -> int:
        ...


class SystemClock:
    """Wall clock in timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SystemRandomSource:
    """CSPRNG-backed randomness from :mod:`secrets`."""

    def token_bytes(self, n: int) -> bytes:
        return secrets.token_bytes(n)

    def token_urlsafe(self, n: int) -> str:
        return secrets.token_urlsafe(n)

    def choice(self, seq: str) -> str:
        return secrets.choice(seq)

    def randbelow(self, n: int) -> int:
        return secrets.randbelow(n)
