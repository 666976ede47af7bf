from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from linesauth.config import LogoutScope, Settings
from linesauth.logging import get_logger
from linesauth.service.email import EmailService
from linesauth.service.errors import (
    AccountDisabledError,
    AlreadyExistsError,
    AttemptsExceededError,
    ExpiredError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidOrExpiredError,
    InvalidOTPError,
    InvalidTokenError,
    NotFoundError,
    NotVerifiedError,
    ServiceError,
    UnauthenticatedError,
    ValidationError,
)
from linesauth.service.otp import generate_otp, is_well_formed, otp_expiry
from linesauth.service.tokens import TokenClaims, TokenIssuer, TokenPair
from linesauth.storage.common import is_expired
from linesauth.storage.errors import ConstraintViolation
from linesauth.storage.models import (
    Ledger,
    OtpCheck,
    OtpCheckStatus,
    PasswordReset,
    PendingRegistration,
    RefreshToken,
    Role,
    RotationStatus,
    User,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        role: Role = Role.USER,
        email_verified: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def record_login(self, user_id: str, at: datetime) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def upsert_pending_registration(
        self, entry: PendingRegistration
    ) -> PendingRegistration: ...

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]: ...

    def delete_pending_registration(self, email: str) -> bool: ...

    def upsert_password_reset(self, entry: PasswordReset) -> PasswordReset: ...

    def get_password_reset(self, email: str) -> Optional[PasswordReset]: ...

    def delete_password_reset(self, email: str) -> bool: ...

    def reissue_otp(
        self, ledger: Ledger, email: str, otp: str, otp_expiry: datetime
    ) -> Optional[PendingRegistration | PasswordReset]: ...

    def check_otp(
        self,
        ledger: Ledger,
        email: str,
        code: str,
        *,
        now: datetime,
        max_attempts: int,
    ) -> OtpCheck: ...

    def complete_registration(
        self, pending: PendingRegistration, *, password_algo: str
    ) -> User: ...

    def consume_password_reset(self, email: str) -> Optional[PasswordReset]: ...

    def add_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str, *, user_id: Optional[str] = None) -> int: ...

    def rotate_refresh_token(
        self,
        user_id: str,
        old_token: str,
        new_record: RefreshToken,
        *,
        now: datetime,
    ) -> RotationStatus: ...

    def revoke_user_sessions(self, user_id: str) -> int: ...

    def purge_expired_refresh_tokens(self, now: datetime) -> int: ...


@dataclass
class AuthContext:
    user: User
    claims: TokenClaims

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> Role:
        return self.user.role


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """OTP-gated registration, login, token rotation and revocation.

    Works against either store backend. The store owns every multi-step
    invariant (attempt counting, rotation, bulk revocation); this class only
    sequences calls and maps outcomes to error kinds.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        tokens: Optional[TokenIssuer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.email = email or EmailService()
        self.tokens = tokens or TokenIssuer(settings)
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    # -- passwords -------------------------------------------------------------------

    def _validate_password(self, password: str) -> None:
        if not isinstance(password, str) or not (
            PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH
        ):
            raise ValidationError(
                f"password must be {PASSWORD_MIN_LENGTH}-{PASSWORD_MAX_LENGTH} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def _burn_dummy_verify(self, password: str) -> None:
        """Spend the same argon2 work as a real check so unknown emails are not faster."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    # -- tokens ----------------------------------------------------------------------

    def _open_session(self, user: User) -> TokenPair:
        pair = self.tokens.issue(user.id, token_version=user.token_version)
        self.store.add_refresh_token(
            RefreshToken(
                token=pair.refresh_token,
                user_id=user.id,
                expires_at=pair.refresh_expires_at,
                created_at=self._now(),
            )
        )
        return pair

    def _new_otp(self) -> tuple[str, datetime]:
        code = generate_otp(self.settings.otp_length)
        return code, otp_expiry(self._now(), self.settings.otp_ttl_minutes)

    def _otp_response(self, email: str) -> dict:
        return {"email": email, "expires_in": self.settings.otp_ttl_minutes * 60}

    def _check_otp(self, ledger: Ledger, email: str, code: str) -> OtpCheck:
        if not is_well_formed(code or "", self.settings.otp_length):
            raise ValidationError(
                f"otp must be {self.settings.otp_length} digits", detail={"field": "otp"}
            )
        result = self.store.check_otp(
            ledger,
            email,
            code,
            now=self._now(),
            max_attempts=self.settings.otp_max_attempts,
        )
        status = result.status
        if status is OtpCheckStatus.MATCHED:
            return result
        self.logger.warning(
            "otp_verification_failed",
            ledger=ledger.value,
            reason=status.value,
            attempts=result.attempts,
            email_hash=_email_hash(email),
        )
        if status is OtpCheckStatus.MISSING:
            if ledger is Ledger.REGISTRATION:
                raise NotFoundError("no pending registration for this email")
            raise NotFoundError("no password reset requested for this email")
        if status is OtpCheckStatus.EXPIRED:
            raise ExpiredError("code expired; request a new one")
        if status is OtpCheckStatus.EXHAUSTED:
            raise AttemptsExceededError("too many attempts; request a new code")
        attempts_left = max(0, self.settings.otp_max_attempts - result.attempts)
        raise InvalidOTPError("invalid code", detail={"attempts_left": attempts_left})

    async def _dispatch(
        self, send: Callable[..., bool], event: str, email: str, *args, **kwargs
    ) -> None:
        """Run a blocking notifier call off the event loop; log when it reports failure."""
        delivered = await asyncio.to_thread(send, email, *args, **kwargs)
        if not delivered:
            self.logger.warning(event, email_hash=_email_hash(email))

    # -- registration ----------------------------------------------------------------

    async def request_registration_otp(
        self,
        email: str,
        full_name: str,
        password: str,
        *,
        role: Role = Role.USER,
    ) -> dict:
        email = normalize_email(email)
        self._validate_password(password)
        if self.store.get_user_by_email(email):
            raise AlreadyExistsError("email already registered", detail={"field": "email"})
        pwd_hash, _ = await asyncio.to_thread(self._hash_password, password)
        code, expiry = self._new_otp()
        self.store.upsert_pending_registration(
            PendingRegistration(
                email=email,
                full_name=full_name.strip(),
                password_hash=pwd_hash,
                otp=code,
                otp_expiry=expiry,
                role=Role.parse(role),
            )
        )
        self.logger.info("registration_otp_requested", email_hash=_email_hash(email))
        await self._dispatch(
            self.email.send_registration_otp,
            "registration_otp_delivery_failed",
            email,
            code,
            ttl_minutes=self.settings.otp_ttl_minutes,
        )
        return self._otp_response(email)

    async def verify_registration_otp(self, email: str, otp: str) -> Tuple[User, TokenPair]:
        email = normalize_email(email)
        result = self._check_otp(Ledger.REGISTRATION, email, otp)
        pending = result.entry
        try:
            user = self.store.complete_registration(pending, password_algo=PASSWORD_ALGO)
        except ConstraintViolation:
            self.logger.warning("registration_conflict", email_hash=_email_hash(email))
            self.store.delete_pending_registration(email)
            raise AlreadyExistsError("email already registered", detail={"field": "email"})
        tokens = self._open_session(user)
        self.logger.info("user_registered", user_id=user.id, role=user.role.value)
        try:
            await self._dispatch(
                self.email.send_welcome, "welcome_email_failed", user.email, user.full_name
            )
        except Exception as exc:
            self.logger.warning("welcome_email_failed", user_id=user.id, error=str(exc))
        return user, tokens

    async def resend_registration_otp(self, email: str) -> dict:
        email = normalize_email(email)
        code, expiry = self._new_otp()
        entry = self.store.reissue_otp(Ledger.REGISTRATION, email, code, expiry)
        if entry is None:
            raise NotFoundError("no pending registration for this email")
        self.logger.info("registration_otp_resent", email_hash=_email_hash(email))
        await self._dispatch(
            self.email.send_registration_otp,
            "registration_otp_delivery_failed",
            email,
            code,
            ttl_minutes=self.settings.otp_ttl_minutes,
        )
        return self._otp_response(email)

    # -- login / refresh -------------------------------------------------------------

    async def login(self, email: str, password: str) -> Tuple[User, TokenPair]:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            await asyncio.to_thread(self._burn_dummy_verify, password or "")
            self.logger.warning("login_failed", reason="unknown_email", email_hash=_email_hash(email))
            raise InvalidCredentialsError("invalid email or password")
        if not await asyncio.to_thread(self.verify_password, user.id, password or ""):
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError("invalid email or password")
        if not user.is_active:
            self.logger.warning("login_failed", reason="account_disabled", user_id=user.id)
            raise AccountDisabledError("account is disabled")
        user = self.store.record_login(user.id, self._now()) or user
        tokens = self._open_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, tokens

    async def refresh(self, refresh_token: str) -> Tuple[User, TokenPair]:
        claims = self.tokens.verify_refresh(refresh_token)
        now = self._now()
        stored = self.store.get_refresh_token(refresh_token)
        if not stored or stored.user_id != claims.user_id:
            self.logger.warning("refresh_token_unknown", user_id=claims.user_id)
            raise InvalidOrExpiredError("refresh token is invalid or expired")
        if is_expired(stored.expires_at, now):
            self.store.delete_refresh_token(refresh_token)
            raise InvalidOrExpiredError("refresh token is invalid or expired")
        user = self.store.get_user(claims.user_id)
        if not user:
            raise InvalidOrExpiredError("refresh token is invalid or expired")
        if not user.is_active:
            raise AccountDisabledError("account is disabled")

        pair = self.tokens.issue(user.id, token_version=user.token_version)
        status = self.store.rotate_refresh_token(
            user.id,
            refresh_token,
            RefreshToken(
                token=pair.refresh_token,
                user_id=user.id,
                expires_at=pair.refresh_expires_at,
                created_at=now,
            ),
            now=now,
        )
        if status is not RotationStatus.ROTATED:
            self.logger.warning(
                "refresh_rotation_conflict", user_id=user.id, status=status.value
            )
            raise InvalidOrExpiredError("refresh token is invalid or expired")
        self.logger.info("refresh_rotated", user_id=user.id)
        return user, pair

    # -- revocation ------------------------------------------------------------------

    async def logout_one(self, user_id: str, refresh_token: str) -> int:
        removed = self.store.delete_refresh_token(refresh_token, user_id=user_id)
        self.logger.info("logout", user_id=user_id, scope=LogoutScope.SESSION.value, removed=removed)
        return removed

    async def logout_all(self, user_id: str) -> int:
        removed = self.store.revoke_user_sessions(user_id)
        self.logger.info("logout", user_id=user_id, scope=LogoutScope.ALL.value, removed=removed)
        return removed

    async def logout(
        self,
        user_id: str,
        refresh_token: Optional[str] = None,
        *,
        scope: Optional[LogoutScope | str] = None,
    ) -> tuple[LogoutScope, int]:
        """End a session. Without a token every session of the user ends."""
        if not refresh_token:
            return LogoutScope.ALL, await self.logout_all(user_id)
        resolved = LogoutScope(scope or self.settings.logout_default_scope)
        if resolved is LogoutScope.ALL:
            return resolved, await self.logout_all(user_id)
        return resolved, await self.logout_one(user_id, refresh_token)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        self._validate_password(new_password)
        if not await asyncio.to_thread(
            self.verify_password, user_id, current_password or ""
        ):
            self.logger.warning("change_password_rejected", user_id=user_id)
            raise InvalidCurrentPasswordError("current password is incorrect")
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, new_password)
        self.store.save_password(user_id, pwd_hash, algo)
        revoked = self.store.revoke_user_sessions(user_id)
        self.logger.info("password_changed", user_id=user_id, revoked=revoked)
        return revoked

    async def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        removed = self.store.purge_expired_refresh_tokens(now or self._now())
        self.logger.info("refresh_tokens_purged", removed=removed)
        return removed

    # -- password reset --------------------------------------------------------------

    async def request_password_reset(self, email: str) -> dict:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user and user.is_active:
            code, expiry = self._new_otp()
            self.store.upsert_password_reset(
                PasswordReset(email=email, otp=code, otp_expiry=expiry)
            )
            self.logger.info("password_reset_requested", user_id=user.id)
            await self._dispatch(
                self.email.send_password_reset_otp,
                "password_reset_delivery_failed",
                email,
                code,
                ttl_minutes=self.settings.otp_ttl_minutes,
            )
        else:
            self.logger.info(
                "password_reset_ignored",
                reason="inactive" if user else "unknown_email",
                email_hash=_email_hash(email),
            )
        return self._otp_response(email)

    async def verify_password_reset_otp(self, email: str, otp: str) -> dict:
        email = normalize_email(email)
        self._check_otp(Ledger.PASSWORD_RESET, email, otp)
        self.logger.info("password_reset_verified", email_hash=_email_hash(email))
        return {"email": email, "verified": True}

    async def reset_password(self, email: str, new_password: str) -> int:
        email = normalize_email(email)
        self._validate_password(new_password)
        entry = self.store.get_password_reset(email)
        if not entry or not entry.verified:
            raise NotVerifiedError("verify the reset code first")
        if is_expired(entry.otp_expiry, self._now()):
            self.store.delete_password_reset(email)
            raise ExpiredError("code expired; request a new one")
        user = self.store.get_user_by_email(email)
        if not user:
            self.store.delete_password_reset(email)
            raise NotFoundError("user not found")
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, new_password)
        if self.store.consume_password_reset(email) is None:
            raise NotVerifiedError("verify the reset code first")
        self.store.save_password(user.id, pwd_hash, algo)
        revoked = self.store.revoke_user_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, revoked=revoked)
        return revoked

    # -- gateway ---------------------------------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthenticatedError("authentication required")
        try:
            claims = self.tokens.verify_access(token)
        except InvalidTokenError:
            raise UnauthenticatedError("invalid token")
        user = self.store.get_user(claims.user_id)
        if not user or not user.is_active:
            raise UnauthenticatedError("user not found or inactive")
        if claims.version != user.token_version:
            raise UnauthenticatedError("session has been revoked")
        return AuthContext(user=user, claims=claims)

    async def optional_auth(self, authorization: Optional[str]) -> Optional[AuthContext]:
        try:
            return await self.authenticate(authorization)
        except ServiceError:
            return None

    async def get_current_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    # -- admin -----------------------------------------------------------------------

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    async def set_user_role(self, user_id: str, role: Role | str) -> User:
        try:
            parsed = Role.parse(role)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "role"})
        user = self.store.update_user_role(user_id, parsed)
        if not user:
            raise NotFoundError("user not found")
        self.logger.info("user_role_changed", user_id=user_id, role=parsed.value)
        return user

    async def set_user_active(self, user_id: str, is_active: bool) -> User:
        user = self.store.set_user_active(user_id, is_active)
        if not user:
            raise NotFoundError("user not found")
        self.logger.info("user_active_changed", user_id=user_id, is_active=is_active)
        return user

    async def provision_user(
        self,
        email: str,
        full_name: str,
        password: str,
        *,
        role: Role | str = Role.USER,
    ) -> User:
        """Create a verified account directly, bypassing the OTP ledger."""
        email = normalize_email(email)
        self._validate_password(password)
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        try:
            user = self.store.create_user(
                email, full_name.strip(), role=Role.parse(role), email_verified=True
            )
        except ConstraintViolation:
            raise AlreadyExistsError("email already registered", detail={"field": "email"})
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_provisioned", user_id=user.id, role=user.role.value)
        return user
