from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from idgate.logging import get_logger
from idgate.storage.errors import ConstraintViolation, StoreUnavailable
from idgate.storage.models import Account, PasswordResetRecord, SessionToken, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT UNIQUE,
        name TEXT,
        phone TEXT UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        permissions TEXT[] NOT NULL DEFAULT '{}',
        email_verified_at TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        deleted_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id BIGINT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_token (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS session_token_account_idx ON session_token (account_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_record (
        email TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)

_ACCOUNT_COLUMNS = {
    "username",
    "email",
    "name",
    "phone",
    "role",
    "permissions",
    "email_verified_at",
    "last_login_at",
}


def _constraint_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for candidate in ("username", "email", "phone"):
        if candidate in constraint:
            return candidate
    return "unknown"


class PostgresStore:
    """Postgres-backed identity store."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _normalize_email(email: Optional[str]) -> Optional[str]:
        return email.strip().lower() if email else None

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=int(row["id"]),
            username=row["username"],
            email=row.get("email"),
            name=row.get("name"),
            phone=row.get("phone"),
            role=row.get("role", "user"),
            permissions=list(row.get("permissions") or []),
            email_verified_at=row.get("email_verified_at"),
            last_login_at=row.get("last_login_at"),
            deleted_at=row.get("deleted_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_token(row: dict) -> SessionToken:
        return SessionToken(
            id=int(row["id"]),
            account_id=int(row["account_id"]),
            name=row["name"],
            token_hash=row["token_hash"],
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
            expires_at=row.get("expires_at"),
        )

    # accounts
    def create_account(
        self,
        username: str,
        email: Optional[str] = None,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: str = "user",
        permissions: Optional[List[str]] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (username, email, name, phone, role, permissions, email_verified_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        username,
                        self._normalize_email(email),
                        name,
                        phone,
                        role,
                        list(permissions or []),
                        email_verified_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field_name = _constraint_field(exc)
            raise ConstraintViolation(
                f"{field_name} already exists", {"field": field_name}
            ) from exc
        return self._row_to_account(row)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = self._normalize_email(email)
        if not normalized:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalized,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, limit: int = 100, *, include_suspended: bool = True) -> List[Account]:
        where = "" if include_suspended else " WHERE deleted_at IS NULL"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM account{where} ORDER BY id LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def update_account(self, account_id: int, **changes: Any) -> Optional[Account]:
        unknown = set(changes) - _ACCOUNT_COLUMNS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if "email" in changes:
            changes["email"] = self._normalize_email(changes["email"])
        if "permissions" in changes:
            changes["permissions"] = list(changes["permissions"] or [])
        if not changes:
            return self.get_account(account_id)
        # Column names come from the allow-list above, never from input
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = list(changes.values()) + [account_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field_name = _constraint_field(exc)
            raise ConstraintViolation(
                f"{field_name} already exists", {"field": field_name}
            ) from exc
        return self._row_to_account(row) if row else None

    def suspend_account(self, account_id: int, deleted_at: datetime) -> Optional[int]:
        with self._connect() as conn:
            updated = conn.execute(
                "UPDATE account SET deleted_at = %s, updated_at = now() WHERE id = %s",
                (deleted_at, account_id),
            )
            if updated.rowcount == 0:
                return None
            deleted = conn.execute(
                "DELETE FROM session_token WHERE account_id = %s", (account_id,)
            )
            return deleted.rowcount

    def restore_account(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET deleted_at = NULL, updated_at = now() WHERE id = %s RETURNING *",
                (account_id,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def purge_account(self, account_id: int) -> Optional[int]:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM session_token WHERE account_id = %s", (account_id,)
            )
            removed = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            if removed.rowcount == 0:
                return None
            return deleted.rowcount

    # credentials
    def save_password(
        self, account_id: int, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            ) from exc

    def get_password_record(self, account_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # session tokens
    def create_token(
        self,
        account_id: int,
        name: str,
        token_hash: str,
        *,
        expires_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> SessionToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO session_token (account_id, name, token_hash, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, name, token_hash, created_at or utcnow(), expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "account does not exist", {"account_id": account_id}
            ) from exc
        return self._row_to_token(row)

    def get_token(self, token_id: int) -> Optional[SessionToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def touch_token(self, token_id: int, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE session_token SET last_used_at = %s WHERE id = %s",
                (used_at, token_id),
            )

    def delete_token(self, token_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM session_token WHERE id = %s", (token_id,))
            return result.rowcount > 0

    def list_account_tokens(self, account_id: int) -> List[SessionToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM session_token WHERE account_id = %s ORDER BY id",
                (account_id,),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def delete_account_tokens(
        self, account_id: int, except_token_id: Optional[int] = None
    ) -> int:
        with self._connect() as conn:
            if except_token_id is None:
                result = conn.execute(
                    "DELETE FROM session_token WHERE account_id = %s", (account_id,)
                )
            else:
                result = conn.execute(
                    "DELETE FROM session_token WHERE account_id = %s AND id <> %s",
                    (account_id, except_token_id),
                )
            return result.rowcount

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM session_token WHERE expires_at IS NOT NULL AND expires_at <= %s",
                (now,),
            )
            return result.rowcount

    # password reset records
    def replace_reset_record(
        self, email: str, token_hash: str, created_at: datetime
    ) -> PasswordResetRecord:
        key = self._normalize_email(email)
        # Single upsert keyed by email: concurrent requests leave exactly one row
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_record (email, token_hash, created_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET token_hash = EXCLUDED.token_hash,
                    created_at = EXCLUDED.created_at
                """,
                (key, token_hash, created_at),
            )
        return PasswordResetRecord(email=key, token_hash=token_hash, created_at=created_at)

    def get_reset_record(self, email: str) -> Optional[PasswordResetRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_record WHERE email = %s",
                (self._normalize_email(email),),
            ).fetchone()
        if not row:
            return None
        return PasswordResetRecord(
            email=row["email"], token_hash=row["token_hash"], created_at=row["created_at"]
        )

    def consume_reset_record(self, email: str, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_record WHERE email = %s AND token_hash = %s",
                (self._normalize_email(email), token_hash),
            )
            return result.rowcount > 0

    def consume_reset_and_set_password(
        self,
        email: str,
        token_hash: str,
        account_id: int,
        password_hash: str,
        password_algo: str,
    ) -> bool:
        try:
            with self._connect() as conn:
                consumed = conn.execute(
                    "DELETE FROM password_reset_record WHERE email = %s AND token_hash = %s",
                    (self._normalize_email(email), token_hash),
                )
                if consumed.rowcount == 0:
                    return False
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
                return True
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            ) from exc

    def delete_reset_records_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_record WHERE created_at <= %s", (cutoff,)
            )
            return result.rowcount

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()
