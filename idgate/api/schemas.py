from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from idgate.service.authorization import PERMISSIONS, Role, effective_permissions
from idgate.service.errors import ERROR_CODES
from idgate.service.facade import BulkResult, MAX_BULK_IDS
from idgate.service.lifecycle import AccountLifecycleManager
from idgate.storage.models import Account


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return re.sub("[\u200b-\u200d\ufeff]", "", normalized)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_optional_email(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return _validate_email(value)


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if not value:
        raise ValueError("username is required")
    if len(value) > 255:
        raise ValueError("username must be at most 255 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username may only contain letters, digits, underscores, dots and hyphens"
        )
    return value


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    value = value.strip()
    if len(value) > 20:
        raise ValueError("phone must be at most 20 characters")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_permissions(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    unknown = sorted(set(value) - set(PERMISSIONS))
    if unknown:
        raise ValueError(f"unknown permissions: {', '.join(unknown)}")
    return list(dict.fromkeys(value))


def _require_confirmation(password: str, confirmation: Optional[str], field: str) -> None:
    if confirmation is not None and confirmation != password:
        raise ValueError(f"{field} confirmation does not match")


# Requests


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str
    password_confirmation: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = None
    device_name: str = Field(default="auth_token", max_length=255)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @model_validator(mode="after")
    def _check_confirmation(self):
        _require_confirmation(self.password, self.password_confirmation, "password")
        return self


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)
    device_name: str = Field(default="auth_token", max_length=255)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        return value.strip()


class VerifyEmailRequest(BaseModel):
    id: int = Field(..., gt=0)
    hash: str = Field(..., min_length=1, max_length=128)
    expires: int
    signature: str = Field(..., min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    email: str
    token: str = Field(..., min_length=1, max_length=256)
    password: str
    password_confirmation: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _check_confirmation(self):
        _require_confirmation(self.password, self.password_confirmation, "password")
        return self


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str
    new_password_confirmation: Optional[str] = None

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _check_confirmation(self):
        _require_confirmation(
            self.new_password, self.new_password_confirmation, "new_password"
        )
        return self


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_email(value)

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class AdminCreateUserRequest(BaseModel):
    username: str
    password: str
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Role = Role.USER
    permissions: Optional[List[str]] = None

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_email(value)

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @field_validator("permissions")
    @classmethod
    def _check_permissions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_permissions(value)


class AdminUpdateUserRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    username: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[Role] = None

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_email(value)

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    def profile_changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True, exclude={"role"})
        if changes.get("username") is None:
            changes.pop("username", None)
        return changes


class AdminResetPasswordRequest(BaseModel):
    password: Optional[str] = None
    password_confirmation: Optional[str] = None
    generate_random: bool = False

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None

    @model_validator(mode="after")
    def _check_choice(self):
        if self.password is None and not self.generate_random:
            raise ValueError("provide password or set generate_random")
        if self.password is not None:
            _require_confirmation(self.password, self.password_confirmation, "password")
        return self


class BulkUserIdsRequest(BaseModel):
    user_ids: List[int] = Field(..., min_length=1)

    @field_validator("user_ids")
    @classmethod
    def _check_ids(cls, value: List[int]) -> List[int]:
        if any(uid <= 0 for uid in value):
            raise ValueError("user ids must be positive integers")
        if len(set(value)) > MAX_BULK_IDS:
            raise ValueError(f"at most {MAX_BULK_IDS} user ids per request")
        return value


class BulkDeleteRequest(BulkUserIdsRequest):
    permanent: bool = False


class BulkRoleChangeRequest(BulkUserIdsRequest):
    role: Role


# Responses


class UserResponse(BaseModel):
    id: int
    username: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: str
    permissions: List[str] = Field(default_factory=list)
    status: str
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        return cls(
            id=account.id,
            username=account.username,
            name=account.name,
            email=account.email,
            phone=account.phone,
            role=account.role,
            permissions=effective_permissions(account),
            status=AccountLifecycleManager.state(account),
            email_verified_at=account.email_verified_at,
            last_login_at=account.last_login_at,
            deleted_at=account.deleted_at,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class TokenResponse(BaseModel):
    user: UserResponse
    token: str
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None


class RegisterResponse(TokenResponse):
    email_verification_required: bool


class BulkItemResponse(BaseModel):
    user_id: int
    status: str
    message: str


class BulkResponse(BaseModel):
    processed_count: int
    successful_count: int
    failed_count: int
    results: List[BulkItemResponse]

    @classmethod
    def from_result(cls, result: BulkResult) -> "BulkResponse":
        return cls(
            processed_count=result.processed_count,
            successful_count=result.successful_count,
            failed_count=result.failed_count,
            results=[
                BulkItemResponse(user_id=r.user_id, status=r.status, message=r.message)
                for r in result.results
            ],
        )
