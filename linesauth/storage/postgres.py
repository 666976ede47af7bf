from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from linesauth.logging import get_logger
from linesauth.storage.common import evaluate_otp_attempt, is_expired
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
)

_LEDGER_TABLES = {
    Ledger.REGISTRATION: "pending_registration",
    Ledger.PASSWORD_RESET: "password_reset",
}

_REQUIRED_TABLES = [
    "app_user",
    "user_auth_credential",
    "pending_registration",
    "password_reset",
    "refresh_token",
]


def _is_uuid(value: str) -> bool:
    """app_user ids are UUID columns; anything else can never match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store for users, OTP ledgers and refresh tokens.

    Multi-row invariants are enforced inside single transactions. Refresh
    rotation and bulk revocation both lock the owning ``app_user`` row first,
    so they serialize per user without deadlocking against each other.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    # -- row mapping -------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row["full_name"],
            role=Role.parse(row.get("role", Role.USER.value)),
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            email_verified_at=row.get("email_verified_at"),
            last_login=row.get("last_login"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            token_version=row.get("token_version", 0),
        )

    @staticmethod
    def _ledger_from_row(
        ledger: Ledger, row: Dict[str, Any]
    ) -> PendingRegistration | PasswordReset:
        if ledger is Ledger.REGISTRATION:
            return PendingRegistration(
                email=row["email"],
                full_name=row["full_name"],
                password_hash=row["password_hash"],
                otp=row["otp"],
                otp_expiry=row["otp_expiry"],
                attempts=row["attempts"],
                role=Role.parse(row["role"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
        return PasswordReset(
            email=row["email"],
            otp=row["otp"],
            otp_expiry=row["otp_expiry"],
            attempts=row["attempts"],
            verified=row["verified"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    # -- users ---------------------------------------------------------------------

    def _insert_user(self, conn, user: User) -> None:
        conn.execute(
            """
            INSERT INTO app_user (
                id, email, full_name, role, is_active, email_verified,
                email_verified_at, created_at, updated_at, token_version
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user.id,
                user.email,
                user.full_name,
                user.role.value,
                user.is_active,
                user.email_verified,
                user.email_verified_at,
                user.created_at,
                user.updated_at,
                user.token_version,
            ),
        )

    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        role: Role = Role.USER,
        email_verified: bool = True,
    ) -> User:
        user = User.new(email, full_name, role=role, email_verified=email_verified)
        try:
            with self._connect() as conn:
                self._insert_user(conn, user)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role.value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET last_login = %s, updated_at = now() WHERE id = %s RETURNING *",
                (at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise RecordNotFound("user", user_id)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # -- OTP ledgers ---------------------------------------------------------------

    def upsert_pending_registration(self, entry: PendingRegistration) -> PendingRegistration:
        """Last request wins: any earlier row for the email is replaced."""
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO pending_registration (
                    email, full_name, password_hash, otp, otp_expiry, attempts, role
                )
                VALUES (%s, %s, %s, %s, %s, 0, %s)
                ON CONFLICT (email) DO UPDATE
                SET full_name = EXCLUDED.full_name,
                    password_hash = EXCLUDED.password_hash,
                    otp = EXCLUDED.otp,
                    otp_expiry = EXCLUDED.otp_expiry,
                    attempts = 0,
                    role = EXCLUDED.role,
                    updated_at = now()
                RETURNING *
                """,
                (
                    entry.email,
                    entry.full_name,
                    entry.password_hash,
                    entry.otp,
                    entry.otp_expiry,
                    entry.role.value,
                ),
            ).fetchone()
        return self._ledger_from_row(Ledger.REGISTRATION, row)

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        return self._get_ledger_entry(Ledger.REGISTRATION, email)

    def delete_pending_registration(self, email: str) -> bool:
        return self._delete_ledger_entry(Ledger.REGISTRATION, email)

    def upsert_password_reset(self, entry: PasswordReset) -> PasswordReset:
        """Last request wins: any earlier row for the email is replaced."""
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO password_reset (email, otp, otp_expiry, attempts, verified)
                VALUES (%s, %s, %s, 0, FALSE)
                ON CONFLICT (email) DO UPDATE
                SET otp = EXCLUDED.otp,
                    otp_expiry = EXCLUDED.otp_expiry,
                    attempts = 0,
                    verified = FALSE,
                    updated_at = now()
                RETURNING *
                """,
                (entry.email, entry.otp, entry.otp_expiry),
            ).fetchone()
        return self._ledger_from_row(Ledger.PASSWORD_RESET, row)

    def get_password_reset(self, email: str) -> Optional[PasswordReset]:
        return self._get_ledger_entry(Ledger.PASSWORD_RESET, email)

    def delete_password_reset(self, email: str) -> bool:
        return self._delete_ledger_entry(Ledger.PASSWORD_RESET, email)

    def _get_ledger_entry(self, ledger: Ledger, email: str):
        query = sql.SQL("SELECT * FROM {} WHERE email = %s").format(
            sql.Identifier(_LEDGER_TABLES[ledger])
        )
        with self._connect() as conn:
            row = conn.execute(query, (email,)).fetchone()
        return self._ledger_from_row(ledger, row) if row else None

    def _delete_ledger_entry(self, ledger: Ledger, email: str) -> bool:
        query = sql.SQL("DELETE FROM {} WHERE email = %s").format(
            sql.Identifier(_LEDGER_TABLES[ledger])
        )
        with self._connect() as conn:
            cur = conn.execute(query, (email,))
            return cur.rowcount > 0

    def reissue_otp(
        self, ledger: Ledger, email: str, otp: str, otp_expiry: datetime
    ) -> Optional[PendingRegistration | PasswordReset]:
        """Swap in a fresh code for an existing row and reset its counters."""
        extra = ", verified = FALSE" if ledger is Ledger.PASSWORD_RESET else ""
        query = sql.SQL(
            "UPDATE {} SET otp = %s, otp_expiry = %s, attempts = 0, updated_at = now()"
            + extra
            + " WHERE email = %s RETURNING *"
        ).format(sql.Identifier(_LEDGER_TABLES[ledger]))
        with self._connect() as conn:
            row = conn.execute(query, (otp, otp_expiry, email)).fetchone()
        return self._ledger_from_row(ledger, row) if row else None

    def check_otp(
        self,
        ledger: Ledger,
        email: str,
        code: str,
        *,
        now: datetime,
        max_attempts: int,
    ) -> OtpCheck:
        """Evaluate one attempt under a row lock and apply its side effect."""
        table = sql.Identifier(_LEDGER_TABLES[ledger])
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                sql.SQL("SELECT * FROM {} WHERE email = %s FOR UPDATE").format(table),
                (email,),
            ).fetchone()
            entry = self._ledger_from_row(ledger, row) if row else None
            status = evaluate_otp_attempt(entry, code, now=now, max_attempts=max_attempts)
            if entry is None:
                return OtpCheck(status=status)
            if status is OtpCheckStatus.MISMATCH:
                updated = conn.execute(
                    sql.SQL(
                        "UPDATE {} SET attempts = attempts + 1, updated_at = now() "
                        "WHERE email = %s RETURNING attempts"
                    ).format(table),
                    (email,),
                ).fetchone()
                entry.attempts = updated["attempts"]
            elif status is OtpCheckStatus.MATCHED and ledger is Ledger.PASSWORD_RESET:
                conn.execute(
                    "UPDATE password_reset SET verified = TRUE, updated_at = now() WHERE email = %s",
                    (email,),
                )
                entry.verified = True
            return OtpCheck(status=status, attempts=entry.attempts, entry=entry)

    def complete_registration(
        self, pending: PendingRegistration, *, password_algo: str
    ) -> User:
        """Create the user from a pending row and drop the row in one transaction."""
        user = User.new(pending.email, pending.full_name, role=pending.role)
        try:
            with self._connect() as conn, conn.transaction():
                self._insert_user(conn, user)
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user.id, pending.password_hash, password_algo),
                )
                conn.execute(
                    "DELETE FROM pending_registration WHERE email = %s AND otp = %s",
                    (pending.email, pending.otp),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def consume_password_reset(self, email: str) -> Optional[PasswordReset]:
        """Remove and return the reset row, but only if it has been verified."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM password_reset WHERE email = %s AND verified RETURNING *",
                (email,),
            ).fetchone()
        return self._ledger_from_row(Ledger.PASSWORD_RESET, row) if row else None

    # -- refresh tokens ------------------------------------------------------------

    def add_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token, record.user_id, record.expires_at, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def delete_refresh_token(self, token: str, *, user_id: Optional[str] = None) -> int:
        with self._connect() as conn:
            if user_id is None:
                cur = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            else:
                cur = conn.execute(
                    "DELETE FROM refresh_token WHERE token = %s AND user_id = %s",
                    (token, user_id),
                )
            return cur.rowcount

    def rotate_refresh_token(
        self,
        user_id: str,
        old_token: str,
        new_record: RefreshToken,
        *,
        now: datetime,
    ) -> RotationStatus:
        """Replace ``old_token`` with ``new_record`` if the old one is still live.

        The conditional DELETE is the linearization point: a concurrent
        rotation of the same token blocks on the row lock and then finds
        nothing to delete.
        """
        with self._connect() as conn, conn.transaction():
            owner = conn.execute(
                "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not owner:
                return RotationStatus.MISSING
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token = %s AND user_id = %s RETURNING expires_at",
                (old_token, user_id),
            ).fetchone()
            if not row:
                return RotationStatus.MISSING
            if is_expired(row["expires_at"], now):
                return RotationStatus.EXPIRED
            conn.execute(
                """
                INSERT INTO refresh_token (token, user_id, expires_at, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (new_record.token, user_id, new_record.expires_at, new_record.created_at),
            )
            return RotationStatus.ROTATED

    def revoke_user_sessions(self, user_id: str) -> int:
        """Delete every refresh token of the user and invalidate issued access tokens."""
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "UPDATE app_user SET token_version = token_version + 1, updated_at = now() WHERE id = %s",
                (user_id,),
            )
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at < %s", (now,))
            return cur.rowcount
