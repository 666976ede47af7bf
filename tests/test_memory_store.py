from datetime import datetime, timedelta, timezone

import pytest

from linesauth.storage.errors import ConstraintViolation, RecordNotFound
from linesauth.storage.memory import MemoryStore
from linesauth.storage.models import (
    Ledger,
    OtpCheckStatus,
    PasswordReset,
    PendingRegistration,
    RefreshToken,
    Role,
    RotationStatus,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _pending(email="ada@example.com", otp="123456"):
    return PendingRegistration(
        email=email,
        full_name="Ada",
        password_hash="$argon2id$stub",
        otp=otp,
        otp_expiry=NOW + timedelta(minutes=10),
    )


def _token(user_id, token="t-1", expires_at=None):
    return RefreshToken(
        token=token, user_id=user_id, expires_at=expires_at or NOW + timedelta(days=1)
    )


class TestUsers:
    def test_duplicate_email_rejected(self):
        store = MemoryStore()
        store.create_user("ada@example.com", "Ada")
        with pytest.raises(ConstraintViolation):
            store.create_user("ada@example.com", "Other Ada")

    def test_returned_users_are_copies(self):
        store = MemoryStore()
        user = store.create_user("ada@example.com", "Ada")
        user.role = Role.ADMIN
        assert store.get_user(user.id).role is Role.USER

    def test_save_password_for_unknown_user(self):
        with pytest.raises(RecordNotFound):
            MemoryStore().save_password("missing", "hash", "argon2id")


class TestLedgers:
    def test_check_order_expired_before_exhausted(self):
        store = MemoryStore()
        entry = _pending()
        store.upsert_pending_registration(entry)
        for _ in range(5):
            store.check_otp(Ledger.REGISTRATION, entry.email, "000000", now=NOW, max_attempts=5)
        late = NOW + timedelta(minutes=11)
        result = store.check_otp(
            Ledger.REGISTRATION, entry.email, "123456", now=late, max_attempts=5
        )
        assert result.status is OtpCheckStatus.EXPIRED

    def test_reissue_resets_counters(self):
        store = MemoryStore()
        store.upsert_password_reset(
            PasswordReset(
                email="ada@example.com",
                otp="123456",
                otp_expiry=NOW,
                attempts=3,
                verified=True,
            )
        )
        entry = store.reissue_otp(
            Ledger.PASSWORD_RESET, "ada@example.com", "654321", NOW + timedelta(minutes=10)
        )
        assert entry.otp == "654321"
        assert entry.attempts == 0
        assert entry.verified is False

    def test_consume_requires_verified(self):
        store = MemoryStore()
        store.upsert_password_reset(
            PasswordReset(email="ada@example.com", otp="123456", otp_expiry=NOW)
        )
        assert store.consume_password_reset("ada@example.com") is None
        assert store.get_password_reset("ada@example.com") is not None

    def test_completion_drops_verified_row(self):
        store = MemoryStore()
        store.upsert_pending_registration(_pending())
        pending = store.get_pending_registration("ada@example.com")
        store.complete_registration(pending, password_algo="argon2id")
        assert store.get_pending_registration("ada@example.com") is None

    def test_completion_keeps_reissued_row(self):
        store = MemoryStore()
        store.upsert_pending_registration(_pending())
        verified = store.get_pending_registration("ada@example.com")
        store.reissue_otp(
            Ledger.REGISTRATION, "ada@example.com", "777777", NOW + timedelta(minutes=10)
        )
        store.complete_registration(verified, password_algo="argon2id")
        assert store.get_user_by_email("ada@example.com") is not None
        assert store.get_pending_registration("ada@example.com").otp == "777777"


class TestRefreshTokens:
    def test_token_for_unknown_user_rejected(self):
        with pytest.raises(ConstraintViolation):
            MemoryStore().add_refresh_token(_token("missing"))

    def test_rotation_outcomes(self):
        store = MemoryStore()
        user = store.create_user("ada@example.com", "Ada")
        store.add_refresh_token(_token(user.id, "t-1"))
        assert (
            store.rotate_refresh_token(user.id, "t-1", _token(user.id, "t-2"), now=NOW)
            is RotationStatus.ROTATED
        )
        assert (
            store.rotate_refresh_token(user.id, "t-1", _token(user.id, "t-3"), now=NOW)
            is RotationStatus.MISSING
        )
        assert set(store.refresh_tokens) == {"t-2"}

    def test_expired_rotation_drops_token(self):
        store = MemoryStore()
        user = store.create_user("ada@example.com", "Ada")
        store.add_refresh_token(_token(user.id, "t-1", expires_at=NOW - timedelta(seconds=1)))
        status = store.rotate_refresh_token(user.id, "t-1", _token(user.id, "t-2"), now=NOW)
        assert status is RotationStatus.EXPIRED
        assert store.refresh_tokens == {}

    def test_revoke_bumps_token_version(self):
        store = MemoryStore()
        user = store.create_user("ada@example.com", "Ada")
        store.add_refresh_token(_token(user.id, "t-1"))
        store.add_refresh_token(_token(user.id, "t-2"))
        assert store.revoke_user_sessions(user.id) == 2
        assert store.get_user(user.id).token_version == 1
        assert store.revoke_user_sessions(user.id) == 0


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("ada@example.com", "Ada", role=Role.EDITOR)
        store.save_password(user.id, "$argon2id$stub", "argon2id")
        store.upsert_pending_registration(_pending("grace@example.com"))
        store.add_refresh_token(_token(user.id, "t-1"))

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_user(user.id)
        assert restored.role is Role.EDITOR
        assert restored.created_at.tzinfo is not None
        assert reloaded.get_password_record(user.id) == ("$argon2id$stub", "argon2id")
        assert reloaded.get_pending_registration("grace@example.com").otp == "123456"
        assert reloaded.get_refresh_token("t-1").user_id == user.id

    def test_unreadable_state_starts_empty(self, tmp_path):
        state_dir = tmp_path / "state"
        state_dir.mkdir()
        (state_dir / "auth_store.json").write_text("{not json")
        store = MemoryStore(fs_root=str(tmp_path))
        assert store.list_users() == []

    def test_failed_write_keeps_previous_state(self, tmp_path, monkeypatch):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("ada@example.com", "Ada")

        def disk_full(*args, **kwargs):
            raise OSError("no space left on device")

        monkeypatch.setattr("linesauth.storage.memory.json.dump", disk_full)
        store.create_user("grace@example.com", "Grace")
        monkeypatch.undo()

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert [u.id for u in reloaded.list_users()] == [user.id]
        assert list((tmp_path / "state").glob("*.tmp")) == []
