from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from idgate.logging import get_logger
from idgate.storage.errors import ConstraintViolation
from idgate.storage.models import Account, PasswordResetRecord, SessionToken, utcnow

_UNIQUE_ACCOUNT_FIELDS = ("username", "email", "phone")
_MUTABLE_ACCOUNT_FIELDS = {
    "username",
    "email",
    "name",
    "phone",
    "role",
    "permissions",
    "email_verified_at",
    "last_login_at",
}


class MemoryStore:
    """In-process backing store with JSON snapshots for local runs and tests."""

    def __init__(self, fs_root: str = "/tmp/idgate", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.tokens: Dict[int, SessionToken] = {}
        self.reset_records: Dict[str, PasswordResetRecord] = {}
        self._account_seq: int = 1
        self._token_seq: int = 1
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _copy_account(account: Account) -> Account:
        return replace(account, permissions=list(account.permissions))

    @staticmethod
    def _normalize_email(email: Optional[str]) -> Optional[str]:
        return email.strip().lower() if email else None

    def _check_unique(self, values: Dict[str, Any], *, ignore_id: Optional[int] = None) -> None:
        for field_name in _UNIQUE_ACCOUNT_FIELDS:
            value = values.get(field_name)
            if value is None:
                continue
            for existing in self.accounts.values():
                if existing.id == ignore_id:
                    continue
                current = getattr(existing, field_name)
                if current is None:
                    continue
                if field_name == "email":
                    clash = current.lower() == value.lower()
                else:
                    clash = current == value
                if clash:
                    raise ConstraintViolation(
                        f"{field_name} already exists", {"field": field_name}
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
        with self._data_lock:
            email = self._normalize_email(email)
            self._check_unique({"username": username, "email": email, "phone": phone})
            now = utcnow()
            account = Account(
                id=self._account_seq,
                username=username,
                email=email,
                name=name,
                phone=phone,
                role=role,
                permissions=list(permissions or []),
                email_verified_at=email_verified_at,
                created_at=now,
                updated_at=now,
            )
            self._account_seq += 1
            self.accounts[account.id] = account
            self._persist_state()
            return self._copy_account(account)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._copy_account(account) if account else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.username == username), None
            )
            return self._copy_account(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = self._normalize_email(email)
        if not normalized:
            return None
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.email and a.email.lower() == normalized
                ),
                None,
            )
            return self._copy_account(account) if account else None

    def list_accounts(self, limit: int = 100, *, include_suspended: bool = True) -> List[Account]:
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: a.id)
            if not include_suspended:
                ordered = [a for a in ordered if a.deleted_at is None]
            return [self._copy_account(a) for a in ordered[:limit]]

    def update_account(self, account_id: int, **changes: Any) -> Optional[Account]:
        unknown = set(changes) - _MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "email" in changes:
                changes["email"] = self._normalize_email(changes["email"])
            self._check_unique(changes, ignore_id=account_id)
            for field_name, value in changes.items():
                if field_name == "permissions":
                    value = list(value or [])
                setattr(account, field_name, value)
            account.updated_at = utcnow()
            self._persist_state()
            return self._copy_account(account)

    def suspend_account(self, account_id: int, deleted_at: datetime) -> Optional[int]:
        """Tombstone the account and drop its tokens in one step.

        Returns the number of revoked tokens, or None when the account is missing.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.deleted_at = deleted_at
            account.updated_at = utcnow()
            revoked = self._drop_account_tokens(account_id)
            self._persist_state()
            return revoked

    def restore_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.deleted_at = None
            account.updated_at = utcnow()
            self._persist_state()
            return self._copy_account(account)

    def purge_account(self, account_id: int) -> Optional[int]:
        with self._data_lock:
            if account_id not in self.accounts:
                return None
            revoked = self._drop_account_tokens(account_id)
            self.credentials.pop(account_id, None)
            self.accounts.pop(account_id, None)
            self._persist_state()
            return revoked

    # credentials
    def save_password(
        self, account_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, account_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

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
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": account_id}
                )
            token = SessionToken(
                id=self._token_seq,
                account_id=account_id,
                name=name,
                token_hash=token_hash,
                created_at=created_at or utcnow(),
                expires_at=expires_at,
            )
            self._token_seq += 1
            self.tokens[token.id] = token
            self._persist_state()
            return replace(token)

    def get_token(self, token_id: int) -> Optional[SessionToken]:
        with self._data_lock:
            token = self.tokens.get(token_id)
            return replace(token) if token else None

    def touch_token(self, token_id: int, used_at: datetime) -> None:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token:
                return
            token.last_used_at = used_at
            self._persist_state()

    def delete_token(self, token_id: int) -> bool:
        with self._data_lock:
            removed = self.tokens.pop(token_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def list_account_tokens(self, account_id: int) -> List[SessionToken]:
        with self._data_lock:
            return [
                replace(t)
                for t in sorted(self.tokens.values(), key=lambda t: t.id)
                if t.account_id == account_id
            ]

    def _drop_account_tokens(
        self, account_id: int, except_token_id: Optional[int] = None
    ) -> int:
        stale = [
            tid
            for tid, tok in self.tokens.items()
            if tok.account_id == account_id and tid != except_token_id
        ]
        for tid in stale:
            self.tokens.pop(tid, None)
        return len(stale)

    def delete_account_tokens(
        self, account_id: int, except_token_id: Optional[int] = None
    ) -> int:
        with self._data_lock:
            revoked = self._drop_account_tokens(account_id, except_token_id)
            if revoked:
                self._persist_state()
            return revoked

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, tok in self.tokens.items()
                if tok.expires_at is not None and tok.expires_at <= now
            ]
            for tid in stale:
                self.tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # password reset records
    def replace_reset_record(
        self, email: str, token_hash: str, created_at: datetime
    ) -> PasswordResetRecord:
        """Store a reset record, superseding any earlier one for the email."""
        key = self._normalize_email(email)
        with self._data_lock:
            record = PasswordResetRecord(
                email=key, token_hash=token_hash, created_at=created_at
            )
            self.reset_records[key] = record
            self._persist_state()
            return replace(record)

    def get_reset_record(self, email: str) -> Optional[PasswordResetRecord]:
        with self._data_lock:
            record = self.reset_records.get(self._normalize_email(email))
            return replace(record) if record else None

    def consume_reset_record(self, email: str, token_hash: str) -> bool:
        """Delete the record only if it still carries ``token_hash``."""
        key = self._normalize_email(email)
        with self._data_lock:
            record = self.reset_records.get(key)
            if not record or record.token_hash != token_hash:
                return False
            self.reset_records.pop(key, None)
            self._persist_state()
            return True

    def consume_reset_and_set_password(
        self,
        email: str,
        token_hash: str,
        account_id: int,
        password_hash: str,
        password_algo: str,
    ) -> bool:
        """Drop the reset record and store the new credential as one step."""
        key = self._normalize_email(email)
        with self._data_lock:
            record = self.reset_records.get(key)
            if not record or record.token_hash != token_hash:
                return False
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.reset_records.pop(key, None)
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()
            return True

    def delete_reset_records_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [k for k, r in self.reset_records.items() if r.created_at <= cutoff]
            for key in stale:
                self.reset_records.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def ping(self) -> bool:
        return True

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "account_seq": self._account_seq,
            "token_seq": self._token_seq,
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": account_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for account_id, creds in self.credentials.items()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "reset_records": [
                {
                    "email": r.email,
                    "token_hash": r.token_hash,
                    "created_at": self._serialize_datetime(r.created_at),
                }
                for r in self.reset_records.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            int(a["id"]): self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            int(entry["account_id"]): (
                entry["password_hash"],
                entry.get("password_algo", ""),
            )
            for entry in data.get("credentials", [])
        }
        self.tokens = {
            int(t["id"]): self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.reset_records = {
            r["email"]: PasswordResetRecord(
                email=r["email"],
                token_hash=r["token_hash"],
                created_at=self._deserialize_datetime(r["created_at"]),
            )
            for r in data.get("reset_records", [])
        }
        self._account_seq = max(
            int(data.get("account_seq", 1)), max(self.accounts, default=0) + 1
        )
        self._token_seq = max(
            int(data.get("token_seq", 1)), max(self.tokens, default=0) + 1
        )
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            tokens=len(self.tokens),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "name": account.name,
            "phone": account.phone,
            "role": account.role,
            "permissions": list(account.permissions),
            "email_verified_at": self._serialize_datetime(account.email_verified_at),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "deleted_at": self._serialize_datetime(account.deleted_at),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=int(data["id"]),
            username=data["username"],
            email=data.get("email"),
            name=data.get("name"),
            phone=data.get("phone"),
            role=data.get("role", "user"),
            permissions=list(data.get("permissions") or []),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_token(self, token: SessionToken) -> dict:
        return {
            "id": token.id,
            "account_id": token.account_id,
            "name": token.name,
            "token_hash": token.token_hash,
            "created_at": self._serialize_datetime(token.created_at),
            "last_used_at": self._serialize_datetime(token.last_used_at),
            "expires_at": self._serialize_datetime(token.expires_at),
        }

    def _deserialize_token(self, data: dict) -> SessionToken:
        return SessionToken(
            id=int(data["id"]),
            account_id=int(data["account_id"]),
            name=data.get("name", ""),
            token_hash=data["token_hash"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            expires_at=self._deserialize_datetime(data.get("expires_at")),
        )
