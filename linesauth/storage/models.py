from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of platform roles."""

    USER = "USER"
    EDITOR = "EDITOR"
    AD_MANAGER = "AD_MANAGER"
    ADMIN = "ADMIN"

    @classmethod
    def parse(cls, value: "Role | str") -> "Role":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"unknown role: {value!r}") from None


@dataclass
class User:
    id: str
    email: str
    full_name: str
    role: Role = Role.USER
    is_active: bool = True
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    token_version: int = 0

    @classmethod
    def new(
        cls,
        email: str,
        full_name: str,
        *,
        role: Role = Role.USER,
        email_verified: bool = True,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            full_name=full_name,
            role=role,
            email_verified=email_verified,
            email_verified_at=now if email_verified else None,
            created_at=now,
            updated_at=now,
        )

    def to_public(self) -> Dict[str, Any]:
        """Projection safe to hand to callers; credentials live elsewhere."""
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role.value,
            "is_active": self.is_active,
            "email_verified": self.email_verified,
            "email_verified_at": self.email_verified_at,
            "last_login": self.last_login,
            "created_at": self.created_at,
        }


@dataclass
class PendingRegistration:
    email: str
    full_name: str
    password_hash: str
    otp: str
    otp_expiry: datetime
    attempts: int = 0
    role: Role = Role.USER
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordReset:
    email: str
    otp: str
    otp_expiry: datetime
    attempts: int = 0
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


class Ledger(str, Enum):
    """OTP-gated flows tracked per email."""

    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


class OtpCheckStatus(str, Enum):
    MISSING = "missing"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    MISMATCH = "mismatch"
    MATCHED = "matched"


@dataclass
class OtpCheck:
    """Outcome of one verification attempt against a ledger row."""

    status: OtpCheckStatus
    attempts: int = 0
    entry: PendingRegistration | PasswordReset | None = None


class RotationStatus(str, Enum):
    ROTATED = "rotated"
    MISSING = "missing"
    EXPIRED = "expired"
