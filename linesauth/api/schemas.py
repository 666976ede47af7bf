from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from linesauth.storage.models import Role, User

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    Zero-width and bidi override characters are stripped first so they cannot
    be used to spoof an address that looks identical to another.
    """
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "not_found",
    "expired",
    "attempts_exceeded",
    "invalid_credentials",
    "invalid_otp",
    "invalid_current_password",
    "account_disabled",
    "already_exists",
    "not_verified",
    "unauthenticated",
    "token_expired",
    "invalid_token",
    "invalid_or_expired",
    "forbidden",
    "too_many_requests",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable, machine-readable code values."""

    code: str = Field(..., description="Stable error kind")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_OTP_PATTERN = re.compile(r"^[0-9]{4,10}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


def _validate_otp(value: str) -> str:
    value = value.strip()
    if not _OTP_PATTERN.match(value):
        raise ValueError("otp must be a numeric code")
    return value


class _EmailBody(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_body_email(cls, value: str) -> str:
        return _validate_email(value)


class RegistrationOTPRequest(_EmailBody):
    full_name: str = Field(..., min_length=2, max_length=100)
    password: str

    @field_validator("full_name")
    @classmethod
    def _normalize_full_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if len(cleaned) < 2:
            raise ValueError("full_name must be at least 2 characters")
        return cleaned

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class OTPVerifyRequest(_EmailBody):
    otp: str = Field(..., max_length=10)

    @field_validator("otp")
    @classmethod
    def _validate_otp_format(cls, value: str) -> str:
        return _validate_otp(value)


class ResendOTPRequest(_EmailBody):
    pass


class LoginRequest(_EmailBody):
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    scope: Optional[Literal["session", "all"]] = None


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordResetRequest(_EmailBody):
    pass


class PasswordResetVerifyRequest(OTPVerifyRequest):
    pass


class PasswordResetConfirm(_EmailBody):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role: str
    is_active: bool = True
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.to_public())


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class OTPDispatchResponse(BaseModel):
    email: str
    expires_in: int = Field(..., description="Seconds until the code expires")


class LogoutResponse(BaseModel):
    scope: Literal["session", "all"]
    revoked: int


class PasswordUpdateResponse(BaseModel):
    revoked_sessions: int


class UserListResponse(BaseModel):
    items: List[UserResponse]


class AdminUserUpdateRequest(BaseModel):
    role: Optional[Literal["USER", "EDITOR", "AD_MANAGER", "ADMIN"]] = None
    is_active: Optional[bool] = None

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _require_change(self):
        if self.role is None and self.is_active is None:
            raise ValueError("provide role or is_active")
        return self

    @property
    def parsed_role(self) -> Optional[Role]:
        return Role.parse(self.role) if self.role else None


class PurgeResponse(BaseModel):
    removed: int
