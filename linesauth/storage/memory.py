from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from linesauth.logging import get_logger
from linesauth.storage.common import ensure_aware, evaluate_otp_attempt, is_expired
from linesauth.storage.errors import ConstraintViolation, RecordNotFound
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
    utcnow,
)

_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "email_verified_at",
    "last_login",
    "otp_expiry",
    "expires_at",
}


class MemoryStore:
    """In-process backing store for users, OTP ledgers and refresh tokens.

    Every read-modify-write runs under one re-entrant lock, which makes
    rotation, attempt counting and bulk revocation atomic with respect to
    each other. When ``fs_root`` is given, state is mirrored to a JSON file
    and reloaded on construction.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.pending_registrations: Dict[str, PendingRegistration] = {}
        self.password_resets: Dict[str, PasswordReset] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can be called from inside other locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- users -----------------------------------------------------------------

    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        role: Role = Role.USER,
        email_verified: bool = True,
    ) -> User:
        with self._data_lock:
            self._ensure_email_free(email)
            user = User.new(email, full_name, role=role, email_verified=email_verified)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def _ensure_email_free(self, email: str) -> None:
        if any(existing.email == email for existing in self.users.values()):
            raise ConstraintViolation("email already exists", {"field": "email"})

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in results[:limit]]

    def _update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        return self._update_user(user_id, last_login=at)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user", user_id)
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- OTP ledgers ----------------------------------------------------------------

    def _ledger(self, ledger: Ledger) -> Dict[str, Any]:
        if ledger is Ledger.REGISTRATION:
            return self.pending_registrations
        return self.password_resets

    def upsert_pending_registration(self, entry: PendingRegistration) -> PendingRegistration:
        """Last request wins: any earlier row for the email is replaced."""
        with self._data_lock:
            existing = self.pending_registrations.get(entry.email)
            if existing:
                entry.created_at = existing.created_at
            entry.attempts = 0
            entry.updated_at = utcnow()
            self.pending_registrations[entry.email] = replace(entry)
            self._persist_state()
            return replace(entry)

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        with self._data_lock:
            entry = self.pending_registrations.get(email)
            return replace(entry) if entry else None

    def delete_pending_registration(self, email: str) -> bool:
        with self._data_lock:
            removed = self.pending_registrations.pop(email, None) is not None
            if removed:
                self._persist_state()
            return removed

    def upsert_password_reset(self, entry: PasswordReset) -> PasswordReset:
        """Last request wins: any earlier row for the email is replaced."""
        with self._data_lock:
            existing = self.password_resets.get(entry.email)
            if existing:
                entry.created_at = existing.created_at
            entry.attempts = 0
            entry.verified = False
            entry.updated_at = utcnow()
            self.password_resets[entry.email] = replace(entry)
            self._persist_state()
            return replace(entry)

    def get_password_reset(self, email: str) -> Optional[PasswordReset]:
        with self._data_lock:
            entry = self.password_resets.get(email)
            return replace(entry) if entry else None

    def delete_password_reset(self, email: str) -> bool:
        with self._data_lock:
            removed = self.password_resets.pop(email, None) is not None
            if removed:
                self._persist_state()
            return removed

    def reissue_otp(
        self, ledger: Ledger, email: str, otp: str, otp_expiry: datetime
    ) -> Optional[PendingRegistration | PasswordReset]:
        """Swap in a fresh code for an existing row and reset its counters."""
        with self._data_lock:
            rows = self._ledger(ledger)
            entry = rows.get(email)
            if entry is None:
                return None
            entry.otp = otp
            entry.otp_expiry = otp_expiry
            entry.attempts = 0
            if isinstance(entry, PasswordReset):
                entry.verified = False
            entry.updated_at = utcnow()
            self._persist_state()
            return replace(entry)

    def check_otp(
        self,
        ledger: Ledger,
        email: str,
        code: str,
        *,
        now: datetime,
        max_attempts: int,
    ) -> OtpCheck:
        """Evaluate one attempt and apply its side effect atomically.

        A mismatch increments ``attempts``; a match on the reset ledger flips
        ``verified``. Concurrent callers for the same email are serialized.
        """
        with self._data_lock:
            rows = self._ledger(ledger)
            entry = rows.get(email)
            status = evaluate_otp_attempt(entry, code, now=now, max_attempts=max_attempts)
            if entry is None:
                return OtpCheck(status=status)
            if status is OtpCheckStatus.MISMATCH:
                entry.attempts += 1
                entry.updated_at = utcnow()
                self._persist_state()
            elif status is OtpCheckStatus.MATCHED and isinstance(entry, PasswordReset):
                entry.verified = True
                entry.updated_at = utcnow()
                self._persist_state()
            return OtpCheck(status=status, attempts=entry.attempts, entry=replace(entry))

    def complete_registration(
        self, pending: PendingRegistration, *, password_algo: str
    ) -> User:
        """Create the user from a pending row and drop the row in one step.

        A row re-issued since ``pending`` was read keeps its newer code.
        """
        with self._data_lock:
            self._ensure_email_free(pending.email)
            user = User.new(pending.email, pending.full_name, role=pending.role)
            self.users[user.id] = user
            self.credentials[user.id] = (pending.password_hash, password_algo)
            current = self.pending_registrations.get(pending.email)
            if current is not None and current.otp == pending.otp:
                del self.pending_registrations[pending.email]
            self._persist_state()
            return replace(user)

    def consume_password_reset(self, email: str) -> Optional[PasswordReset]:
        """Remove and return the reset row, but only if it has been verified."""
        with self._data_lock:
            entry = self.password_resets.get(email)
            if entry is None or not entry.verified:
                return None
            self.password_resets.pop(email, None)
            self._persist_state()
            return entry

    # -- refresh tokens -------------------------------------------------------------

    def add_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.token] = replace(record)
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def delete_refresh_token(self, token: str, *, user_id: Optional[str] = None) -> int:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None or (user_id is not None and record.user_id != user_id):
                return 0
            self.refresh_tokens.pop(token, None)
            self._persist_state()
            return 1

    def rotate_refresh_token(
        self,
        user_id: str,
        old_token: str,
        new_record: RefreshToken,
        *,
        now: datetime,
    ) -> RotationStatus:
        """Replace ``old_token`` with ``new_record`` if the old one is still live.

        This is the linearization point for refresh: of two callers presenting
        the same token, exactly one observes ``ROTATED``.
        """
        with self._data_lock:
            current = self.refresh_tokens.get(old_token)
            if current is None or current.user_id != user_id:
                return RotationStatus.MISSING
            self.refresh_tokens.pop(old_token, None)
            if is_expired(current.expires_at, now):
                self._persist_state()
                return RotationStatus.EXPIRED
            self.refresh_tokens[new_record.token] = replace(new_record)
            self._persist_state()
            return RotationStatus.ROTATED

    def revoke_user_sessions(self, user_id: str) -> int:
        """Delete every refresh token of the user and invalidate issued access tokens."""
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            user = self.users.get(user_id)
            if user:
                user.token_version += 1
                user.updated_at = utcnow()
            self._persist_state()
            return len(stale)

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                t for t, rec in self.refresh_tokens.items() if is_expired(rec.expires_at, now)
            ]
            for token in expired:
                self.refresh_tokens.pop(token, None)
            if expired:
                self._persist_state()
            return len(expired)

    def ping(self) -> None:
        """Health probe; the in-process store is always reachable."""
        return None

    # -- persistence ---------------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize(obj: Any) -> Dict[str, Any]:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Role):
                data[key] = value.value
        return data

    @staticmethod
    def _deserialize_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(raw)
        for key in _DATETIME_FIELDS & data.keys():
            if data[key]:
                data[key] = ensure_aware(datetime.fromisoformat(data[key]))
        if "role" in data:
            data["role"] = Role.parse(data["role"])
        return data

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "pending_registrations": [
                self._serialize(p) for p in self.pending_registrations.values()
            ],
            "password_resets": [self._serialize(r) for r in self.password_resets.values()],
            "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
        }
        path = self._state_path()
        tmp_path = None
        try:
            # Atomic write: temp file in the same directory, then rename over the target
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".auth_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_store_state_unreadable", path=str(path), error=str(exc))
            return False
        self.users = {
            u["id"]: User(**self._deserialize_fields(u)) for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.pending_registrations = {
            p["email"]: PendingRegistration(**self._deserialize_fields(p))
            for p in data.get("pending_registrations", [])
        }
        self.password_resets = {
            r["email"]: PasswordReset(**self._deserialize_fields(r))
            for r in data.get("password_resets", [])
        }
        self.refresh_tokens = {
            t["token"]: RefreshToken(**self._deserialize_fields(t))
            for t in data.get("refresh_tokens", [])
        }
        return True
