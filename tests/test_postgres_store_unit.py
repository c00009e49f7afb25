import contextlib
from datetime import datetime, timezone
from types import SimpleNamespace

import psycopg
import pytest
from psycopg import errors

from idgate.logging import get_logger
from idgate.storage.errors import ConstraintViolation, StoreUnavailable
from idgate.storage.postgres import PostgresStore, _constraint_field

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rowcount=0, rows=None):
        self.rowcount = rowcount
        self._rows = rows or []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(results)
        self.connections_opened = 0

    @contextlib.contextmanager
    def connection(self):
        self.connections_opened += 1
        yield self.conn


class DownPool:
    def connection(self):
        raise psycopg.OperationalError("connection refused")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.pool = pool
    store.logger = get_logger("test")
    return store


class TestAtomicOperations:
    def test_suspend_uses_one_connection(self):
        pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=3))
        store = _store(pool)
        assert store.suspend_account(7, NOW) == 3
        assert pool.connections_opened == 1
        update, delete = pool.conn.statements
        assert update[0].startswith("UPDATE account SET deleted_at")
        assert update[1] == (NOW, 7)
        assert delete[0] == "DELETE FROM session_token WHERE account_id = %s"

    def test_suspend_missing_skips_token_delete(self):
        pool = FakePool(FakeCursor(rowcount=0))
        assert _store(pool).suspend_account(7, NOW) is None
        assert len(pool.conn.statements) == 1

    def test_purge_reports_revoked_tokens(self):
        pool = FakePool(FakeCursor(rowcount=2), FakeCursor(rowcount=1))
        assert _store(pool).purge_account(7) == 2
        assert pool.connections_opened == 1

    def test_purge_missing(self):
        pool = FakePool(FakeCursor(rowcount=0), FakeCursor(rowcount=0))
        assert _store(pool).purge_account(7) is None


class TestResetRecords:
    def test_replace_is_an_upsert(self):
        pool = FakePool()
        record = _store(pool).replace_reset_record("Alice@Example.com", "digest", NOW)
        sql, params = pool.conn.statements[0]
        assert "ON CONFLICT (email) DO UPDATE" in sql
        assert params == ("alice@example.com", "digest", NOW)
        assert record.email == "alice@example.com"

    def test_consume_matches_hash(self):
        pool = FakePool(FakeCursor(rowcount=1))
        assert _store(pool).consume_reset_record("alice@example.com", "digest")
        sql, params = pool.conn.statements[0]
        assert sql.endswith("WHERE email = %s AND token_hash = %s")
        assert params == ("alice@example.com", "digest")

    def test_consume_lost_race(self):
        pool = FakePool(FakeCursor(rowcount=0))
        assert not _store(pool).consume_reset_record("alice@example.com", "digest")

    def test_consume_with_password_shares_transaction(self):
        pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=1))
        assert _store(pool).consume_reset_and_set_password(
            "Alice@Example.com", "digest", 7, "pwd-hash", "argon2"
        )
        assert pool.connections_opened == 1
        delete, upsert = pool.conn.statements
        assert delete[1] == ("alice@example.com", "digest")
        assert upsert[0].startswith("INSERT INTO account_credential")
        assert upsert[1] == (7, "pwd-hash", "argon2")

    def test_consume_with_password_lost_race_writes_nothing(self):
        pool = FakePool(FakeCursor(rowcount=0))
        assert not _store(pool).consume_reset_and_set_password(
            "alice@example.com", "digest", 7, "pwd-hash", "argon2"
        )
        assert len(pool.conn.statements) == 1


class TestListing:
    def test_active_filter_runs_before_limit(self):
        pool = FakePool(FakeCursor(rows=[]))
        _store(pool).list_accounts(limit=5, include_suspended=False)
        sql, params = pool.conn.statements[0]
        assert sql == "SELECT * FROM account WHERE deleted_at IS NULL ORDER BY id LIMIT %s"
        assert params == (5,)

    def test_everyone_by_default(self):
        pool = FakePool(FakeCursor(rows=[]))
        _store(pool).list_accounts(limit=5)
        assert "deleted_at" not in pool.conn.statements[0][0]


class TestErrors:
    def test_unique_violation_becomes_constraint_violation(self):
        pool = FakePool(errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation):
            _store(pool).create_account("alice", "alice@example.com")

    def test_constraint_field_from_name(self):
        exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="account_email_key"))
        assert _constraint_field(exc) == "email"
        assert _constraint_field(SimpleNamespace(diag=None)) == "unknown"

    def test_unreachable_database(self):
        with pytest.raises(StoreUnavailable):
            _store(DownPool()).get_account(1)

    def test_update_rejects_unknown_columns_before_sql(self):
        pool = FakePool()
        with pytest.raises(ValueError):
            _store(pool).update_account(1, deleted_at=NOW)
        assert pool.conn.statements == []


class TestRowMapping:
    def test_account_row(self):
        pool = FakePool(
            FakeCursor(
                rows=[
                    {
                        "id": 3,
                        "username": "alice",
                        "email": "alice@example.com",
                        "name": None,
                        "phone": None,
                        "role": "admin",
                        "permissions": ["manage_users"],
                        "email_verified_at": NOW,
                        "last_login_at": None,
                        "deleted_at": None,
                        "created_at": NOW,
                        "updated_at": NOW,
                    }
                ]
            )
        )
        account = _store(pool).get_account(3)
        assert account.role == "admin"
        assert account.permissions == ["manage_users"]
        assert account.has_verified_email

    def test_missing_password_record(self):
        assert _store(FakePool(FakeCursor())).get_password_record(3) is None
