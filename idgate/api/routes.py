from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from idgate.api.schemas import (
    AdminCreateUserRequest,
    AdminResetPasswordRequest,
    AdminUpdateUserRequest,
    BulkDeleteRequest,
    BulkResponse,
    BulkRoleChangeRequest,
    BulkUserIdsRequest,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from idgate.logging import get_logger
from idgate.service.authorization import Role
from idgate.service.errors import RateLimitedError
from idgate.service.facade import AuthContext, LoginResult
from idgate.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one attempt for ``key`` or raise 429 with a retry hint."""

    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, runtime.settings.rate_limit_window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key_prefix=key.split(":", 1)[0])
        raise RateLimitedError(
            "Too many attempts. Please try again later.", retry_after=reset_seconds
        )
    return info


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().identity.authenticate(authorization)


async def get_admin_context(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    get_runtime().guard.require_role(ctx.account, Role.ADMIN)
    return ctx


def _token_payload(result: LoginResult) -> TokenResponse:
    return TokenResponse(
        user=UserResponse.from_account(result.account),
        token=result.token.plaintext,
        expires_at=result.token.expires_at,
    )


def _ok(data) -> Envelope:
    return Envelope(status="ok", data=data)


# Authentication


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    result = await runtime.identity.register(
        body.username,
        body.email,
        body.password,
        name=body.name,
        phone=body.phone,
        label=body.device_name,
    )
    return _ok(
        RegisterResponse(
            user=UserResponse.from_account(result.account),
            token=result.token.plaintext,
            expires_at=result.token.expires_at,
            email_verification_required=result.email_verification_required,
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange username and password for a bearer token.

    Raises:
        401: invalid credentials (same answer for unknown users)
        403: email address not verified yet
        429: too many attempts for this username and address
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.identity.login(body.username, body.password, label=body.device_name)
    return _ok(_token_payload(result))


@router.post("/auth/admin-login", response_model=Envelope, tags=["auth"])
async def admin_login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin_login:{body.username.lower()}:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.identity.admin_login(body.username, body.password, label="admin_token")
    return _ok(_token_payload(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(ctx: AuthContext = Depends(get_auth_context)):
    await get_runtime().identity.logout(ctx.token_id)
    return _ok({"message": "Logged out successfully"})


async def _verify_email(runtime, account_id: int, id_hash: str, expires: int, signature: str) -> Envelope:
    result = await runtime.identity.verify_email(account_id, id_hash, expires, signature)
    message = (
        "Email address already verified"
        if result.already_verified
        else "Email address verified successfully"
    )
    return _ok(
        {
            "message": message,
            "already_verified": result.already_verified,
            "user": UserResponse.from_account(result.account),
        }
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify_email:{_client_ip(request)}",
        runtime.settings.verify_email_rate_limit_per_minute,
    )
    return await _verify_email(runtime, body.id, body.hash, body.expires, body.signature)


@router.get("/email/verify/{account_id}/{id_hash}", response_model=Envelope, tags=["auth"])
async def verify_email_link(
    request: Request,
    account_id: int = Path(..., gt=0),
    id_hash: str = Path(..., min_length=1, max_length=128),
    expires: int = Query(...),
    signature: str = Query(..., min_length=1, max_length=128),
):
    """Target of the mailed verification link."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify_email:{_client_ip(request)}",
        runtime.settings.verify_email_rate_limit_per_minute,
    )
    return await _verify_email(runtime, account_id, id_hash, expires, signature)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend_verification:{ctx.account.id}",
        runtime.settings.verify_email_rate_limit_per_minute,
    )
    sent = await runtime.identity.resend_verification(ctx.account)
    message = "Verification link sent" if sent else "Email address already verified"
    return _ok({"message": message, "sent": sent})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Always answers the same way so callers cannot probe for accounts."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot_password:{body.email}:{_client_ip(request)}",
        runtime.settings.forgot_password_rate_limit_per_minute,
    )
    await runtime.identity.forgot_password(body.email)
    return _ok(
        {"message": "If that email address is registered, a reset link has been sent."}
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    revoked = await get_runtime().identity.reset_password(body.email, body.token, body.password)
    return _ok({"message": "Your password has been reset.", "revoked_tokens": revoked})


# Profile


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(ctx: AuthContext = Depends(get_auth_context)):
    return _ok(UserResponse.from_account(ctx.account))


@router.put("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(body: ProfileUpdateRequest, ctx: AuthContext = Depends(get_auth_context)):
    account = await get_runtime().identity.update_profile(ctx.account, **body.changes())
    return _ok(UserResponse.from_account(account))


@router.put("/users/change-password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"change_password:{ctx.account.id}",
        runtime.settings.change_password_rate_limit_per_minute,
        response=response,
    )
    revoked = await runtime.identity.change_password(ctx, body.current_password, body.new_password)
    return _ok({"message": "Password changed successfully", "revoked_tokens": revoked})


# Administration


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    include_suspended: bool = Query(True),
    ctx: AuthContext = Depends(get_admin_context),
):
    accounts = await get_runtime().identity.list_users(
        ctx.account, limit=limit, include_suspended=include_suspended
    )
    return _ok({"users": [UserResponse.from_account(a) for a in accounts]})


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(body: AdminCreateUserRequest, ctx: AuthContext = Depends(get_admin_context)):
    account = await get_runtime().identity.create_user(
        ctx.account,
        body.username,
        body.password,
        name=body.name,
        email=body.email,
        phone=body.phone,
        role=body.role.value,
        permissions=body.permissions,
    )
    return _ok(UserResponse.from_account(account))


@router.post("/admin/users/bulk-deactivate", response_model=Envelope, tags=["admin"])
async def admin_bulk_deactivate(body: BulkUserIdsRequest, ctx: AuthContext = Depends(get_admin_context)):
    result = await get_runtime().identity.bulk_deactivate(ctx.account, body.user_ids)
    return _ok(BulkResponse.from_result(result))


@router.post("/admin/users/bulk-activate", response_model=Envelope, tags=["admin"])
async def admin_bulk_activate(body: BulkUserIdsRequest, ctx: AuthContext = Depends(get_admin_context)):
    result = await get_runtime().identity.bulk_activate(ctx.account, body.user_ids)
    return _ok(BulkResponse.from_result(result))


@router.post("/admin/users/bulk-delete", response_model=Envelope, tags=["admin"])
async def admin_bulk_delete(body: BulkDeleteRequest, ctx: AuthContext = Depends(get_admin_context)):
    result = await get_runtime().identity.bulk_delete(
        ctx.account, body.user_ids, permanent=body.permanent
    )
    return _ok(BulkResponse.from_result(result))


@router.post("/admin/users/bulk-role-change", response_model=Envelope, tags=["admin"])
async def admin_bulk_role_change(body: BulkRoleChangeRequest, ctx: AuthContext = Depends(get_admin_context)):
    result = await get_runtime().identity.bulk_role_change(
        ctx.account, body.user_ids, body.role.value
    )
    return _ok(BulkResponse.from_result(result))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(user_id: int = Path(..., gt=0), ctx: AuthContext = Depends(get_admin_context)):
    account = await get_runtime().identity.get_user(ctx.account, user_id)
    return _ok(UserResponse.from_account(account))


@router.put("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    body: AdminUpdateUserRequest,
    user_id: int = Path(..., gt=0),
    ctx: AuthContext = Depends(get_admin_context),
):
    account = await get_runtime().identity.update_user(
        ctx.account,
        user_id,
        role=body.role.value if body.role is not None else None,
        **body.profile_changes(),
    )
    return _ok(UserResponse.from_account(account))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: int = Path(..., gt=0),
    permanent: bool = Query(False),
    ctx: AuthContext = Depends(get_admin_context),
):
    await get_runtime().identity.delete_user(ctx.account, user_id, permanent=permanent)
    message = "User permanently deleted" if permanent else "User deleted successfully"
    return _ok({"message": message})


@router.post("/admin/users/{user_id}/reset-password", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    body: AdminResetPasswordRequest,
    user_id: int = Path(..., gt=0),
    ctx: AuthContext = Depends(get_admin_context),
):
    outcome = await get_runtime().identity.reset_user_password(
        ctx.account,
        user_id,
        password=body.password,
        generate_random=body.generate_random,
    )
    data = {
        "message": "Password reset successfully",
        "user": UserResponse.from_account(outcome.account),
        "revoked_tokens": outcome.revoked_tokens,
    }
    if outcome.generated_password is not None:
        data["generated_password"] = outcome.generated_password
    return _ok(data)


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(user_id: int = Path(..., gt=0), ctx: AuthContext = Depends(get_admin_context)):
    await get_runtime().identity.deactivate_user(ctx.account, user_id)
    return _ok({"message": "User deactivated successfully"})


@router.post("/admin/users/{user_id}/activate", response_model=Envelope, tags=["admin"])
async def admin_activate_user(user_id: int = Path(..., gt=0), ctx: AuthContext = Depends(get_admin_context)):
    account = await get_runtime().identity.activate_user(ctx.account, user_id)
    return _ok({"message": "User activated successfully", "user": UserResponse.from_account(account)})
