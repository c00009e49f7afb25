"""Entry points that compose the identity components for the HTTP layer.

Argon2 work is pushed to a worker thread with :func:`asyncio.to_thread` so
the event loop stays responsive; everything else is plain store I/O.
"""

from __future__ import annotations

import asyncio
import string
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterable, Iterator, List, Optional, Protocol, Tuple

from idgate.config import Settings
from idgate.logging import email_digest, get_logger
from idgate.service.authorization import (
    PERMISSIONS,
    Role,
    RoleAuthorizationGuard,
    SelfOperation,
    default_permissions,
    effective_permissions,
    filter_grantable_permissions,
    is_role_downgrade,
    parse_role,
)
from idgate.service.email import EmailService
from idgate.service.errors import (
    AccountNotFoundError,
    CurrentPasswordIncorrectError,
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    SamePasswordError,
    SelfOperationForbiddenError,
    ServiceError,
    UnauthenticatedError,
    ValidationError,
)
from idgate.service.hashing import PasswordHasher
from idgate.service.lifecycle import AccountLifecycleManager, is_authenticable
from idgate.service.password_reset import PasswordResetTokenStore
from idgate.service.primitives import Clock, RandomSource, SystemClock, SystemRandomSource
from idgate.service.signed_links import SignedLinkVerifier
from idgate.service.tokens import IssuedToken, TokenStore
from idgate.storage.errors import ConstraintViolation
from idgate.storage.models import Account

MAX_BULK_IDS = 100
GENERATED_PASSWORD_LENGTH = 12
_PASSWORD_SYMBOLS = "!@#$%^&*"
_INVALID_CREDENTIALS = "The provided credentials are incorrect."
_ADMIN_ROLES = (Role.ADMIN, Role.SUPER_ADMIN)


class IdentityStore(Protocol):
    def create_account(self, username: str, email: Optional[str] = None, **kwargs: Any) -> Account:
        ...

    def get_account(self, account_id: int) -> Optional[Account]:
        ...

    def get_account_by_username(self, username: str) -> Optional[Account]:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def list_accounts(self, limit: int = 100, *, include_suspended: bool = True) -> List[Account]:
        ...

    def save_password(self, account_id: int, password_hash: str, password_algo: str) -> None:
        ...

    def get_password_record(self, account_id: int) -> Optional[Tuple[str, str]]:
        ...


@dataclass
class AuthContext:
    account: Account
    token_id: int


@dataclass
class LoginResult:
    account: Account
    token: IssuedToken


@dataclass
class RegistrationResult:
    account: Account
    token: IssuedToken
    email_verification_required: bool


@dataclass
class VerificationResult:
    account: Account
    already_verified: bool


@dataclass
class AdminPasswordReset:
    account: Account
    revoked_tokens: int
    generated_password: Optional[str] = None


@dataclass
class BulkItemResult:
    user_id: int
    status: str
    message: str


@dataclass
class BulkResult:
    results: List[BulkItemResult] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.results)

    @property
    def successful_count(self) -> int:
        return sum(1 for r in self.results if r.status == "success")

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")


def dedupe_ids(ids: Iterable[int]) -> List[int]:
    return list(dict.fromkeys(ids))


@contextmanager
def unique_fields() -> Iterator[None]:
    """Report a username/email/phone clash as a field validation failure."""
    try:
        yield
    except ConstraintViolation as exc:
        field_name = exc.detail.get("field")
        if not field_name:
            raise
        raise ValidationError(
            f"The {field_name} has already been taken.",
            status_code=422,
            detail={"field": field_name},
        ) from exc


class IdentitySessionFacade:
    def __init__(
        self,
        store: IdentityStore,
        *,
        settings: Settings,
        hasher: PasswordHasher,
        tokens: TokenStore,
        links: SignedLinkVerifier,
        resets: PasswordResetTokenStore,
        lifecycle: AccountLifecycleManager,
        guard: RoleAuthorizationGuard,
        email: EmailService,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.links = links
        self.resets = resets
        self.lifecycle = lifecycle
        self.guard = guard
        self.email = email
        self.clock = clock or SystemClock()
        self.random = random or SystemRandomSource()
        self.logger = get_logger(__name__)
        self._dummy_hash: Optional[Tuple[str, str]] = None

    # helpers
    def _session_ttl(self) -> Optional[timedelta]:
        minutes = self.settings.session_token_ttl_minutes
        return timedelta(minutes=minutes) if minutes else None

    async def _hash(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify(self, record: Optional[Tuple[str, str]], password: str) -> bool:
        if record is None:
            # Burn the same argon2 cost for unknown principals
            if self._dummy_hash is None:
                self._dummy_hash = await self._hash(self.random.token_urlsafe(16))
            record = self._dummy_hash
            await asyncio.to_thread(self.hasher.verify, record[0], record[1], password)
            return False
        return await asyncio.to_thread(self.hasher.verify, record[0], record[1], password)

    async def _set_password(self, account_id: int, password: str) -> None:
        pwd_hash, algo = await self._hash(password)
        self.store.save_password(account_id, pwd_hash, algo)

    async def _send_verification(self, account: Account) -> bool:
        if not account.email:
            return False
        ttl_minutes = self.settings.verification_link_ttl_minutes
        link = self.links.build_for_account(account, timedelta(minutes=ttl_minutes))
        return await asyncio.to_thread(
            self.email.send_verification_link,
            account.email,
            link.url(self.settings.app_base_url),
            ttl_minutes,
        )

    def _requires_verification(self, account: Account) -> bool:
        return (
            self.settings.require_email_verification
            and parse_role(account.role) is Role.USER
            and not account.has_verified_email
        )

    async def _check_credentials(self, username: str, password: str) -> Account:
        account = self.store.get_account_by_username(username)
        record = self.store.get_password_record(account.id) if account else None
        password_ok = await self._verify(record, password)
        if not password_ok or not is_authenticable(account):
            self.logger.warning(
                "login_failed",
                reason="invalid_credentials",
                account_id=account.id if account else None,
            )
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        return account

    def _generate_password(self) -> str:
        pools = (
            string.ascii_lowercase,
            string.ascii_uppercase,
            string.digits,
            _PASSWORD_SYMBOLS,
        )
        alphabet = "".join(pools)
        chars = [self.random.choice(pool) for pool in pools]
        chars += [
            self.random.choice(alphabet)
            for _ in range(GENERATED_PASSWORD_LENGTH - len(chars))
        ]
        for i in range(len(chars) - 1, 0, -1):
            j = self.random.randbelow(i + 1)
            chars[i], chars[j] = chars[j], chars[i]
        return "".join(chars)

    # authentication
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        label: str = "auth_token",
    ) -> RegistrationResult:
        pwd_hash, algo = await self._hash(password)
        verification_required = self.settings.require_email_verification
        with unique_fields():
            account = self.store.create_account(
                username,
                email,
                name=name,
                phone=phone,
                role=Role.USER.value,
                permissions=[],
                email_verified_at=None if verification_required else self.clock.now(),
            )
        self.store.save_password(account.id, pwd_hash, algo)
        if verification_required:
            await self._send_verification(account)
        token = self.tokens.issue(account.id, label, self._session_ttl())
        self.logger.info(
            "account_registered",
            account_id=account.id,
            email_hash=email_digest(email),
            verification_required=verification_required,
        )
        return RegistrationResult(
            account=account,
            token=token,
            email_verification_required=verification_required,
        )

    async def login(
        self, username: str, password: str, *, label: str = "auth_token"
    ) -> LoginResult:
        account = await self._check_credentials(username, password)
        if self._requires_verification(account):
            self.logger.info("login_blocked_unverified", account_id=account.id)
            raise EmailNotVerifiedError(
                "Please verify your email address before logging in."
            )
        self.lifecycle.record_login(account.id)
        token = self.tokens.issue(account.id, label, self._session_ttl())
        self.logger.info("login_succeeded", account_id=account.id, token_id=token.token_id)
        return LoginResult(account=self.lifecycle.get(account.id), token=token)

    async def admin_login(
        self, username: str, password: str, *, label: str = "admin_token"
    ) -> LoginResult:
        account = await self._check_credentials(username, password)
        if parse_role(account.role) not in _ADMIN_ROLES:
            self.logger.warning("admin_login_denied", account_id=account.id, role=account.role)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        self.lifecycle.record_login(account.id)
        token = self.tokens.issue(
            account.id, label, timedelta(minutes=self.settings.admin_token_ttl_minutes)
        )
        self.logger.info("admin_login_succeeded", account_id=account.id, token_id=token.token_id)
        return LoginResult(account=self.lifecycle.get(account.id), token=token)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        if not authorization:
            raise UnauthenticatedError("Unauthenticated.")
        scheme, _, credentials = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not credentials.strip():
            raise InvalidTokenError("Invalid token")
        account, token = self.tokens.resolve(credentials.strip())
        return AuthContext(account=account, token_id=token.id)

    async def logout(self, token_id: int) -> None:
        self.tokens.revoke(token_id)

    # email verification
    async def resend_verification(self, account: Account) -> bool:
        """Mail a fresh link; returns False when there is nothing to verify."""

        if account.has_verified_email:
            return False
        if not account.email:
            raise ValidationError("Account has no email address to verify")
        await self._send_verification(account)
        return True

    async def verify_email(
        self, account_id: int, id_hash: str, expires: int, signature: str
    ) -> VerificationResult:
        account = self.links.verify(account_id, id_hash, expires, signature)
        if not is_authenticable(account):
            raise AccountNotFoundError("User not found")
        if account.has_verified_email:
            return VerificationResult(account=account, already_verified=True)
        account = self.lifecycle.mark_email_verified(account.id)
        return VerificationResult(account=account, already_verified=False)

    # passwords
    async def forgot_password(self, email: str) -> None:
        account = self.store.get_account_by_email(email)
        if not is_authenticable(account) or not account.email:
            self.logger.info("password_reset_unknown_email", email_hash=email_digest(email))
            return
        token = self.resets.create(account.email)
        await asyncio.to_thread(
            self.email.send_password_reset,
            account.email,
            token,
            self.settings.password_reset_ttl_minutes,
        )

    async def reset_password(self, email: str, token: str, new_password: str) -> int:
        # Reject bad tokens before paying for argon2
        self.resets.check(email, token)
        credential = await self._hash(new_password)
        account = self.resets.verify_and_consume(email, token, credential)
        revoked = self.tokens.revoke_all(account.id)
        self.logger.info("password_reset_completed", account_id=account.id, revoked_tokens=revoked)
        return revoked

    async def change_password(
        self, context: AuthContext, current_password: str, new_password: str
    ) -> int:
        """Rotate the password and revoke every other session of the account.

        The token used for this request stays valid; the count of revoked
        tokens is returned.
        """

        account = context.account
        record = self.store.get_password_record(account.id)
        if not await self._verify(record, current_password):
            raise CurrentPasswordIncorrectError("The current password is incorrect.")
        if await self._verify(record, new_password):
            raise SamePasswordError("The new password must differ from the current password.")
        await self._set_password(account.id, new_password)
        revoked = self.tokens.revoke_all(account.id, except_token_id=context.token_id)
        self.logger.info("password_changed", account_id=account.id, revoked_tokens=revoked)
        return revoked

    # profile
    async def update_profile(self, account: Account, **changes: Any) -> Account:
        with unique_fields():
            updated, email_changed = self.lifecycle.update_profile(account.id, **changes)
        if email_changed and self.settings.require_email_verification:
            await self._send_verification(updated)
        return updated

    # administration
    def _require_admin(self, actor: Account, capability: str = "manage_users") -> Account:
        self.guard.require_role(actor, Role.ADMIN)
        return self.guard.require_permission(actor, capability)

    def _require_outranks(self, actor: Account, target: Account) -> None:
        if parse_role(target.role).rank > parse_role(actor.role).rank:
            raise ForbiddenError("Cannot manage an account with a higher role")

    def _grantable_for(self, actor: Account, role: Role, requested: Optional[Iterable[str]] = None) -> List[str]:
        if role is Role.USER:
            return []
        if role is Role.SUPER_ADMIN:
            return list(PERMISSIONS)
        return filter_grantable_permissions(
            requested or default_permissions(role), effective_permissions(actor)
        )

    async def list_users(self, actor: Account, *, limit: int = 100, include_suspended: bool = True) -> List[Account]:
        self._require_admin(actor)
        return self.store.list_accounts(limit=limit, include_suspended=include_suspended)

    async def get_user(self, actor: Account, user_id: int) -> Account:
        self._require_admin(actor)
        return self.lifecycle.get(user_id)

    async def create_user(
        self,
        actor: Account,
        username: str,
        password: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        role: str = Role.USER.value,
        permissions: Optional[List[str]] = None,
    ) -> Account:
        self._require_admin(actor, "create_users")
        new_role = parse_role(role)
        if new_role is Role.SUPER_ADMIN and parse_role(actor.role) is not Role.SUPER_ADMIN:
            raise ForbiddenError("Only super admins can create super admin accounts")
        granted = self._grantable_for(actor, new_role, permissions)
        pwd_hash, algo = await self._hash(password)
        with unique_fields():
            account = self.store.create_account(
                username,
                email,
                name=name,
                phone=phone,
                role=new_role.value,
                permissions=granted,
                email_verified_at=self.clock.now(),
            )
        self.store.save_password(account.id, pwd_hash, algo)
        self.logger.info(
            "admin_user_created",
            account_id=account.id,
            acting_account_id=actor.id,
            role=new_role.value,
            permissions=granted,
        )
        return account

    async def update_user(self, actor: Account, user_id: int, *, role: Optional[str] = None, **changes: Any) -> Account:
        self._require_admin(actor)
        target = self.lifecycle.get(user_id)
        self._require_outranks(actor, target)
        new_role = parse_role(role) if role is not None else None
        role_changes = new_role is not None and new_role.value != target.role
        if role_changes:
            if actor.id == target.id and is_role_downgrade(target.role, new_role):
                self.logger.warning("self_demotion_denied", account_id=actor.id)
                raise SelfOperationForbiddenError(
                    "You cannot downgrade your own role",
                    status_code=400,
                    error_code="self_demotion_forbidden",
                )
            self.guard.require_permission(actor, "manage_roles")
            if new_role is Role.SUPER_ADMIN and parse_role(actor.role) is not Role.SUPER_ADMIN:
                raise ForbiddenError("Only super admins can grant the super admin role")

        updated = target
        if changes:
            with unique_fields():
                updated, email_changed = self.lifecycle.update_profile(target.id, **changes)
            if email_changed and self.settings.require_email_verification:
                await self._send_verification(updated)
        if role_changes:
            updated = self.lifecycle.change_role(
                target.id, new_role, self._grantable_for(actor, new_role)
            )
            self.tokens.revoke_all(target.id)
        return updated

    async def reset_user_password(
        self,
        actor: Account,
        user_id: int,
        *,
        password: Optional[str] = None,
        generate_random: bool = False,
    ) -> AdminPasswordReset:
        self._require_admin(actor)
        target = self.lifecycle.get(user_id)
        self._require_outranks(actor, target)
        if not password and not generate_random:
            raise ValidationError("Provide a password or request a generated one")
        generated = self._generate_password() if generate_random else None
        await self._set_password(target.id, generated or password)
        revoked = self.tokens.revoke_all(target.id)
        self.logger.info(
            "admin_password_reset",
            account_id=target.id,
            acting_account_id=actor.id,
            generated=generated is not None,
        )
        return AdminPasswordReset(account=target, revoked_tokens=revoked, generated_password=generated)

    def _deactivate_one(self, actor: Account, user_id: int) -> str:
        self.guard.guard_self_operation(actor.id, user_id, SelfOperation.SUSPEND)
        self._require_outranks(actor, self.lifecycle.get(user_id))
        self.lifecycle.suspend(user_id, actor.id)
        return "User deactivated successfully"

    def _activate_one(self, actor: Account, user_id: int) -> str:
        self._require_outranks(actor, self.lifecycle.get(user_id))
        self.lifecycle.restore(user_id)
        return "User activated successfully"

    def _delete_one(self, actor: Account, user_id: int, permanent: bool) -> str:
        self.guard.guard_self_operation(actor.id, user_id, SelfOperation.DELETE)
        self._require_outranks(actor, self.lifecycle.get(user_id))
        if permanent:
            self.lifecycle.purge(user_id, actor.id)
            return "User permanently deleted"
        self.lifecycle.suspend(user_id, actor.id)
        return "User deleted successfully"

    def _change_role_one(self, actor: Account, user_id: int, new_role: Role) -> str:
        target = self.lifecycle.get(user_id)
        self._require_outranks(actor, target)
        self.guard.guard_self_operation(
            actor.id,
            user_id,
            SelfOperation.ROLE_DOWNGRADE,
            current_role=target.role,
            new_role=new_role,
        )
        if target.role != new_role.value:
            self.lifecycle.change_role(user_id, new_role, self._grantable_for(actor, new_role))
            self.tokens.revoke_all(user_id)
        return f"Role changed to {new_role.value}"

    async def deactivate_user(self, actor: Account, user_id: int) -> None:
        self._require_admin(actor)
        self._deactivate_one(actor, user_id)

    async def activate_user(self, actor: Account, user_id: int) -> Account:
        self._require_admin(actor)
        self._activate_one(actor, user_id)
        return self.lifecycle.get(user_id)

    async def delete_user(self, actor: Account, user_id: int, *, permanent: bool = False) -> None:
        self._require_admin(actor, "delete_users" if permanent else "manage_users")
        self._delete_one(actor, user_id, permanent)

    def _run_bulk(self, ids: Iterable[int], operation: Callable[[int], str]) -> BulkResult:
        unique = dedupe_ids(ids)
        if not unique:
            raise ValidationError("user_ids must not be empty")
        if len(unique) > MAX_BULK_IDS:
            raise ValidationError(
                f"At most {MAX_BULK_IDS} users can be processed at once",
                detail={"max": MAX_BULK_IDS, "received": len(unique)},
            )
        result = BulkResult()
        for user_id in unique:
            try:
                message = operation(user_id)
            except ServiceError as exc:
                result.results.append(BulkItemResult(user_id, "failed", exc.message))
            else:
                result.results.append(BulkItemResult(user_id, "success", message))
        self.logger.info(
            "bulk_operation_completed",
            processed=result.processed_count,
            successful=result.successful_count,
            failed=result.failed_count,
        )
        return result

    async def bulk_deactivate(self, actor: Account, user_ids: Iterable[int]) -> BulkResult:
        self._require_admin(actor)
        return self._run_bulk(user_ids, lambda uid: self._deactivate_one(actor, uid))

    async def bulk_activate(self, actor: Account, user_ids: Iterable[int]) -> BulkResult:
        self._require_admin(actor)
        return self._run_bulk(user_ids, lambda uid: self._activate_one(actor, uid))

    async def bulk_delete(self, actor: Account, user_ids: Iterable[int], *, permanent: bool = False) -> BulkResult:
        self._require_admin(actor, "delete_users" if permanent else "manage_users")
        return self._run_bulk(user_ids, lambda uid: self._delete_one(actor, uid, permanent))

    async def bulk_role_change(self, actor: Account, user_ids: Iterable[int], new_role: str) -> BulkResult:
        self._require_admin(actor, "manage_roles")
        role = parse_role(new_role)
        if role is Role.SUPER_ADMIN and parse_role(actor.role) is not Role.SUPER_ADMIN:
            raise ForbiddenError("Only super admins can grant the super admin role")
        return self._run_bulk(user_ids, lambda uid: self._change_role_one(actor, uid, role))

    # maintenance
    async def ensure_default_admin(
        self, username: str = "admin", email: Optional[str] = None, password: Optional[str] = None
    ) -> Tuple[Account, bool]:
        existing = self.store.get_account_by_username(username)
        if existing is not None:
            return existing, False
        if not password:
            raise ValidationError("A password is required to create the default admin")
        pwd_hash, algo = await self._hash(password)
        account = self.store.create_account(
            username,
            email,
            name="Super Admin",
            role=Role.SUPER_ADMIN.value,
            permissions=list(PERMISSIONS),
            email_verified_at=self.clock.now(),
        )
        self.store.save_password(account.id, pwd_hash, algo)
        self.logger.info("default_admin_created", account_id=account.id)
        return account, True

    def sweep_expired(self) -> dict:
        return {
            "tokens": self.tokens.sweep_expired(),
            "reset_records": self.resets.sweep_expired(),
        }
