from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Optional

from idgate.logging import get_logger
from idgate.service.errors import (
    ForbiddenError,
    InsufficientPrivilegesError,
    SelfOperationForbiddenError,
    UnauthenticatedError,
    ValidationError,
)
from idgate.storage.models import Account

if TYPE_CHECKING:
    from idgate.service.lifecycle import AccountLifecycleManager

logger = get_logger(__name__)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]


_ROLE_RANK = {Role.USER: 0, Role.ADMIN: 1, Role.SUPER_ADMIN: 2}

PERMISSIONS = (
    "manage_users",
    "create_users",
    "delete_users",
    "manage_system",
    "view_admin_panel",
    "manage_roles",
    "manage_permissions",
    "system_maintenance",
)

BASELINE_PERMISSION = "manage_users"

DEFAULT_PERMISSIONS = {
    Role.USER: (),
    Role.ADMIN: ("manage_users", "create_users", "view_admin_panel", "manage_roles"),
    Role.SUPER_ADMIN: PERMISSIONS,
}


class SelfOperation(str, Enum):
    SUSPEND = "suspend"
    DELETE = "delete"
    ROLE_DOWNGRADE = "role_downgrade"
    UPDATE = "update"


SELF_OPERATION_MESSAGES = {
    SelfOperation.SUSPEND: "You cannot deactivate your own account",
    SelfOperation.DELETE: "You cannot delete your own account",
    SelfOperation.ROLE_DOWNGRADE: "You cannot downgrade your own role",
}


def parse_role(value: str | Role) -> Role:
    try:
        return Role(value)
    except ValueError as exc:
        raise ValidationError(
            "Unknown role", detail={"role": str(value), "allowed": [r.value for r in Role]}
        ) from exc


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def default_permissions(role: str | Role) -> List[str]:
    return list(DEFAULT_PERMISSIONS[parse_role(role)])


def effective_permissions(account: Account) -> List[str]:
    """Permissions the account actually holds; super_admin holds them all."""

    role = parse_role(account.role)
    if role is Role.SUPER_ADMIN:
        return list(PERMISSIONS)
    if role is Role.USER:
        return []
    return _dedupe(p for p in account.permissions if p in PERMISSIONS)


def filter_grantable_permissions(
    requested: Optional[Iterable[str]], grantor_permissions: Iterable[str]
) -> List[str]:
    """Clamp a requested permission list to what the grantor holds.

    An empty request means the baseline. When nothing survives the
    intersection the grantee still gets the baseline if the grantor has it.
    """

    wanted = _dedupe(requested or ()) or [BASELINE_PERMISSION]
    held = set(grantor_permissions)
    granted = [p for p in wanted if p in held and p in PERMISSIONS]
    if granted:
        return granted
    if BASELINE_PERMISSION in held:
        return [BASELINE_PERMISSION]
    return []


def is_role_downgrade(current_role: str | Role, new_role: str | Role) -> bool:
    return parse_role(new_role).rank < parse_role(current_role).rank


class RoleAuthorizationGuard:
    """Pure role and permission checks against an acting account."""

    def __init__(self, lifecycle: "AccountLifecycleManager") -> None:
        self.lifecycle = lifecycle

    def _require_authenticable(self, account: Optional[Account]) -> Account:
        if account is None or not self.lifecycle.is_authenticable(account):
            raise UnauthenticatedError("Authentication required")
        return account

    def has_role(self, account: Optional[Account], minimum: str | Role) -> bool:
        if account is None or not self.lifecycle.is_authenticable(account):
            return False
        return parse_role(account.role).rank >= parse_role(minimum).rank

    def require_role(self, account: Optional[Account], minimum: str | Role) -> Account:
        account = self._require_authenticable(account)
        if not self.has_role(account, minimum):
            logger.warning(
                "role_check_denied",
                account_id=account.id,
                role=account.role,
                required=parse_role(minimum).value,
            )
            raise ForbiddenError("Insufficient role for this operation")
        return account

    def can(self, account: Optional[Account], capability: str) -> bool:
        if account is None or not self.lifecycle.is_authenticable(account):
            return False
        return capability in effective_permissions(account)

    def require_permission(self, account: Optional[Account], capability: str) -> Account:
        account = self._require_authenticable(account)
        if not self.can(account, capability):
            logger.warning(
                "permission_check_denied",
                account_id=account.id,
                role=account.role,
                permission=capability,
            )
            raise InsufficientPrivilegesError(
                "Insufficient privileges", detail={"permission": capability}
            )
        return account

    def guard_self_operation(
        self,
        acting_account_id: int,
        target_account_id: int,
        operation: SelfOperation,
        *,
        current_role: str | Role | None = None,
        new_role: str | Role | None = None,
    ) -> None:
        if acting_account_id != target_account_id:
            return
        if operation is SelfOperation.UPDATE:
            return
        if operation is SelfOperation.ROLE_DOWNGRADE:
            if current_role is None or new_role is None:
                raise ValueError("role downgrade check needs current_role and new_role")
            if not is_role_downgrade(current_role, new_role):
                return
        logger.warning(
            "self_operation_denied",
            account_id=acting_account_id,
            operation=operation.value,
        )
        raise SelfOperationForbiddenError(SELF_OPERATION_MESSAGES[operation])
