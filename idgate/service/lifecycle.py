"""Account state machine and the mutations that must respect its invariants.

An account is *active* while ``deleted_at`` is unset, *suspended* once it is
set, and *permanently deleted* when its row is purged. Suspension and purge
drop every bearer token of the account inside the same store operation, so
there is no moment where a suspended account still has a working token.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Optional, Protocol, Tuple

from idgate.logging import get_logger
from idgate.service.authorization import (
    PERMISSIONS,
    Role,
    SelfOperation,
    SELF_OPERATION_MESSAGES,
    parse_role,
)
from idgate.service.errors import (
    AccountNotFoundError,
    AlreadySuspendedError,
    NotSuspendedError,
    SelfOperationForbiddenError,
    ValidationError,
)
from idgate.service.primitives import Clock, SystemClock
from idgate.storage.models import Account

ACTIVE = "active"
SUSPENDED = "suspended"

_PROFILE_FIELDS = {"username", "name", "email", "phone"}


def is_authenticable(account: Optional[Account]) -> bool:
    """Single source of truth for whether an account may authenticate."""

    return account is not None and account.deleted_at is None


class AccountStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]:
        ...

    def update_account(self, account_id: int, **changes: Any) -> Optional[Account]:
        ...

    def suspend_account(self, account_id: int, deleted_at: datetime) -> Optional[int]:
        ...

    def restore_account(self, account_id: int) -> Optional[Account]:
        ...

    def purge_account(self, account_id: int) -> Optional[int]:
        ...


class AccountLifecycleManager:
    def __init__(self, store: AccountStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    is_authenticable = staticmethod(is_authenticable)

    @staticmethod
    def state(account: Account) -> str:
        return ACTIVE if is_authenticable(account) else SUSPENDED

    def get(self, account_id: int) -> Account:
        """Load an account in any state; admins use this to see suspended rows."""

        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError("User not found")
        return account

    def get_active(self, account_id: int) -> Account:
        """Load an account that may authenticate; suspended reads as missing."""

        account = self.store.get_account(account_id)
        if not is_authenticable(account):
            raise AccountNotFoundError("User not found")
        return account

    def _refuse_self(self, account_id: int, acting_account_id: int, operation: SelfOperation) -> None:
        if account_id == acting_account_id:
            self.logger.warning(
                "self_operation_denied", account_id=account_id, operation=operation.value
            )
            raise SelfOperationForbiddenError(SELF_OPERATION_MESSAGES[operation])

    def suspend(self, account_id: int, acting_account_id: int) -> int:
        """Suspend the account; returns how many tokens were revoked."""

        self._refuse_self(account_id, acting_account_id, SelfOperation.SUSPEND)
        account = self.get(account_id)
        if account.deleted_at is not None:
            raise AlreadySuspendedError("User is already deactivated")
        revoked = self.store.suspend_account(account_id, self.clock.now())
        if revoked is None:
            raise AccountNotFoundError("User not found")
        self.logger.info(
            "account_suspended",
            account_id=account_id,
            acting_account_id=acting_account_id,
            revoked_tokens=revoked,
        )
        return revoked

    def restore(self, account_id: int) -> Account:
        account = self.get(account_id)
        if account.deleted_at is None:
            raise NotSuspendedError("User is not deactivated")
        restored = self.store.restore_account(account_id)
        if restored is None:
            raise AccountNotFoundError("User not found")
        self.logger.info("account_restored", account_id=account_id)
        return restored

    def purge(self, account_id: int, acting_account_id: int) -> int:
        self._refuse_self(account_id, acting_account_id, SelfOperation.DELETE)
        revoked = self.store.purge_account(account_id)
        if revoked is None:
            raise AccountNotFoundError("User not found")
        self.logger.info(
            "account_purged",
            account_id=account_id,
            acting_account_id=acting_account_id,
            revoked_tokens=revoked,
        )
        return revoked

    def update_profile(self, account_id: int, **changes: Any) -> Tuple[Account, bool]:
        """Apply profile field changes.

        Returns the updated account and whether the email address changed, in
        which case its verification has been cleared.
        """

        unknown = set(changes) - _PROFILE_FIELDS
        if unknown:
            raise ValidationError(
                "Unsupported profile fields", detail={"fields": sorted(unknown)}
            )
        account = self.get(account_id)
        if "email" in changes:
            new_email = (changes["email"] or "").strip().lower() or None
            changes["email"] = new_email
            email_changed = new_email != account.email
        else:
            email_changed = False
        if email_changed:
            changes["email_verified_at"] = None
        if not changes:
            return account, False
        updated = self.store.update_account(account_id, **changes)
        if updated is None:
            raise AccountNotFoundError("User not found")
        self.logger.info(
            "account_profile_updated",
            account_id=account_id,
            fields=sorted(k for k in changes if k != "email_verified_at"),
            email_changed=email_changed,
        )
        return updated, email_changed

    def change_role(
        self, account_id: int, new_role: str | Role, permissions: Iterable[str] = ()
    ) -> Account:
        role = parse_role(new_role)
        stored = [] if role is Role.USER else self._known(permissions)
        updated = self.store.update_account(account_id, role=role.value, permissions=stored)
        if updated is None:
            raise AccountNotFoundError("User not found")
        self.logger.info("account_role_changed", account_id=account_id, role=role.value)
        return updated

    @staticmethod
    def _known(permissions: Iterable[str]) -> List[str]:
        permissions = list(permissions)
        unknown = sorted(set(permissions) - set(PERMISSIONS))
        if unknown:
            raise ValidationError("Unknown permissions", detail={"permissions": unknown})
        return list(dict.fromkeys(permissions))

    def set_permissions(self, account_id: int, permissions: Iterable[str]) -> Account:
        account = self.get(account_id)
        if parse_role(account.role) is Role.USER:
            return account
        updated = self.store.update_account(account_id, permissions=self._known(permissions))
        if updated is None:
            raise AccountNotFoundError("User not found")
        return updated

    def grant_permission(self, account_id: int, permission: str) -> Account:
        account = self.get(account_id)
        if permission in account.permissions:
            return account
        return self.set_permissions(account_id, [*account.permissions, permission])

    def revoke_permission(self, account_id: int, permission: str) -> Account:
        account = self.get(account_id)
        if permission not in account.permissions:
            return account
        return self.set_permissions(
            account_id, [p for p in account.permissions if p != permission]
        )

    def mark_email_verified(self, account_id: int) -> Account:
        updated = self.store.update_account(account_id, email_verified_at=self.clock.now())
        if updated is None:
            raise AccountNotFoundError("User not found")
        self.logger.info("email_verified", account_id=account_id)
        return updated

    def record_login(self, account_id: int) -> None:
        self.store.update_account(account_id, last_login_at=self.clock.now())
