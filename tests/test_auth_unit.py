"""Unit tests for the auth service.

Covers:
- Password hashing and verification
- OTP-gated registration (request, verify, resend)
- Login and refresh-token rotation
- Logout, logout-all and change-password revocation
- OTP-gated password reset
- Gateway authentication
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from linesauth.config import LogoutScope, Settings
from linesauth.service.auth import AuthService
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
    TokenExpiredError,
    UnauthenticatedError,
    ValidationError,
)
from linesauth.service.tokens import TokenIssuer
from linesauth.storage.memory import MemoryStore
from linesauth.storage.models import Ledger, Role

PASSWORD = "CorrectHorse42"


class FakeClock:
    """Shared clock for the service (datetime) and token issuer (epoch seconds)."""

    def __init__(self):
        self.current = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class ThreadRecordingHasher:
    """Wraps a PasswordHasher and notes which threads did the argon2 work."""

    def __init__(self, inner):
        self.inner = inner
        self.threads = set()

    def hash(self, password):
        self.threads.add(threading.get_ident())
        return self.inner.hash(password)

    def verify(self, digest, password):
        self.threads.add(threading.get_ident())
        return self.inner.verify(digest, password)


class RecordingEmail:
    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent = []

    def send_registration_otp(self, to_email, code, *, ttl_minutes=10):
        self.sent.append(("registration", to_email, code))
        return self.deliver

    def send_password_reset_otp(self, to_email, code, *, ttl_minutes=10):
        self.sent.append(("password_reset", to_email, code))
        return self.deliver

    def send_welcome(self, to_email, full_name):
        self.sent.append(("welcome", to_email, full_name))
        return self.deliver


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="unit-access-secret-0123456789abcdef0123456789",
        refresh_token_secret="unit-refresh-secret-0123456789abcdef012345678",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        otp_ttl_minutes=10,
        otp_max_attempts=5,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingEmail()


@pytest.fixture
def auth_service(store, settings, clock, mailer):
    return AuthService(
        store,
        settings,
        email=mailer,
        tokens=TokenIssuer(settings, clock=clock.time),
        clock=clock.now,
    )


def _pending_otp(store, email):
    return store.get_pending_registration(email).otp


def _wrong_code(code: str) -> str:
    return "1" * len(code) if code != "1" * len(code) else "2" * len(code)


async def _register(auth_service, store, email="ada@example.com", full_name="Ada Lovelace"):
    await auth_service.request_registration_otp(email, full_name, PASSWORD)
    return await auth_service.verify_registration_otp(email, _pending_otp(store, email))


class TestPasswordHashing:
    def test_password_hashing_produces_argon2id(self, auth_service):
        pwd_hash, algo = auth_service._hash_password(PASSWORD)
        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")
        assert PASSWORD not in pwd_hash

    def test_same_password_hashes_differently(self, auth_service):
        first, _ = auth_service._hash_password(PASSWORD)
        second, _ = auth_service._hash_password(PASSWORD)
        assert first != second

    async def test_verify_password_checks_stored_hash(self, auth_service, store):
        user, _ = await _register(auth_service, store)
        assert auth_service.verify_password(user.id, PASSWORD) is True
        assert auth_service.verify_password(user.id, "not-the-password") is False

    def test_verify_password_without_record_is_false(self, auth_service):
        assert auth_service.verify_password("missing-user", PASSWORD) is False

    async def test_argon2_work_runs_off_the_event_loop(self, auth_service, store):
        hasher = ThreadRecordingHasher(auth_service._pwd_hasher)
        auth_service._pwd_hasher = hasher
        loop_thread = threading.get_ident()

        user, _ = await _register(auth_service, store)
        await auth_service.login("ada@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ghost@example.com", PASSWORD)
        await auth_service.change_password(user.id, PASSWORD, "BatteryStaple99")
        await auth_service.provision_user("grace@example.com", "Grace", PASSWORD)

        assert hasher.threads
        assert loop_thread not in hasher.threads

    async def test_logins_do_not_stall_other_tasks(self, auth_service, store):
        await _register(auth_service, store)
        loop = asyncio.get_running_loop()
        stalls = []

        async def ticker(stop):
            last = loop.time()
            while not stop.is_set():
                await asyncio.sleep(0.005)
                now = loop.time()
                stalls.append(now - last)
                last = now

        stop = asyncio.Event()
        ticking = asyncio.create_task(ticker(stop))
        await asyncio.gather(
            *(auth_service.login("ada@example.com", PASSWORD) for _ in range(5))
        )
        stop.set()
        await ticking
        assert stalls
        # Five inline argon2 verifies would hold the loop for well over a second
        assert max(stalls) < 0.5


class TestRegistration:
    async def test_request_creates_pending_row_and_sends_code(self, auth_service, store, mailer):
        result = await auth_service.request_registration_otp(
            "  Ada@Example.com ", "Ada Lovelace", PASSWORD
        )
        assert result == {"email": "ada@example.com", "expires_in": 600}
        pending = store.get_pending_registration("ada@example.com")
        assert pending is not None
        assert pending.attempts == 0
        assert pending.password_hash.startswith("$argon2id$")
        assert len(pending.otp) == 6 and pending.otp.isdigit() and pending.otp[0] != "0"
        assert mailer.sent == [("registration", "ada@example.com", pending.otp)]
        assert store.get_user_by_email("ada@example.com") is None

    async def test_rerequest_replaces_code_and_resets_attempts(self, auth_service, store):
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        first = _pending_otp(store, "ada@example.com")
        with pytest.raises(InvalidOTPError):
            await auth_service.verify_registration_otp("ada@example.com", _wrong_code(first))
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        pending = store.get_pending_registration("ada@example.com")
        assert pending.attempts == 0

    async def test_verify_creates_user_and_opens_session(self, auth_service, store, mailer):
        user, tokens = await _register(auth_service, store)
        assert user.email == "ada@example.com"
        assert user.role is Role.USER
        assert user.email_verified is True
        assert store.get_pending_registration("ada@example.com") is None
        assert store.get_refresh_token(tokens.refresh_token).user_id == user.id
        assert ("welcome", "ada@example.com", "Ada Lovelace") in mailer.sent

    async def test_request_for_registered_email_conflicts(self, auth_service, store):
        await _register(auth_service, store)
        with pytest.raises(AlreadyExistsError):
            await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)

    async def test_short_password_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.request_registration_otp("ada@example.com", "Ada", "short")

    async def test_verify_without_pending_row_is_not_found(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.verify_registration_otp("nobody@example.com", "123456")

    async def test_malformed_code_rejected_without_counting(self, auth_service, store):
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        with pytest.raises(ValidationError):
            await auth_service.verify_registration_otp("ada@example.com", "12ab")
        assert store.get_pending_registration("ada@example.com").attempts == 0

    async def test_wrong_code_counts_attempts(self, auth_service, store):
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        code = _pending_otp(store, "ada@example.com")
        with pytest.raises(InvalidOTPError) as excinfo:
            await auth_service.verify_registration_otp("ada@example.com", _wrong_code(code))
        assert excinfo.value.detail["attempts_left"] == 4
        assert store.get_pending_registration("ada@example.com").attempts == 1

    async def test_attempt_cap_blocks_correct_code(self, auth_service, store):
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        code = _pending_otp(store, "ada@example.com")
        for _ in range(5):
            with pytest.raises(InvalidOTPError):
                await auth_service.verify_registration_otp("ada@example.com", _wrong_code(code))
        with pytest.raises(AttemptsExceededError):
            await auth_service.verify_registration_otp("ada@example.com", code)
        assert store.get_user_by_email("ada@example.com") is None

    async def test_expired_code_rejected(self, auth_service, store, clock):
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        code = _pending_otp(store, "ada@example.com")
        clock.advance(minutes=10, seconds=1)
        with pytest.raises(ExpiredError):
            await auth_service.verify_registration_otp("ada@example.com", code)

    async def test_code_valid_at_exact_deadline(self, auth_service, store, clock):
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        code = _pending_otp(store, "ada@example.com")
        clock.advance(minutes=10)
        user, _ = await auth_service.verify_registration_otp("ada@example.com", code)
        assert user.email == "ada@example.com"

    async def test_resend_issues_fresh_code(self, auth_service, store, clock, mailer):
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        first = _pending_otp(store, "ada@example.com")
        with pytest.raises(InvalidOTPError):
            await auth_service.verify_registration_otp("ada@example.com", _wrong_code(first))
        clock.advance(minutes=9)
        await auth_service.resend_registration_otp("ada@example.com")
        pending = store.get_pending_registration("ada@example.com")
        assert pending.attempts == 0
        assert pending.otp_expiry == clock.now() + timedelta(minutes=10)
        assert mailer.sent[-1] == ("registration", "ada@example.com", pending.otp)

    async def test_verify_after_email_taken_drops_pending_row(self, auth_service, store):
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        code = _pending_otp(store, "ada@example.com")
        await auth_service.provision_user("ada@example.com", "Ada", PASSWORD)
        with pytest.raises(AlreadyExistsError):
            await auth_service.verify_registration_otp("ada@example.com", code)
        assert store.get_pending_registration("ada@example.com") is None

    async def test_resend_without_pending_row_is_not_found(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.resend_registration_otp("nobody@example.com")

    async def test_delivery_failure_does_not_fail_request(self, store, settings, clock):
        service = AuthService(
            store,
            settings,
            email=RecordingEmail(deliver=False),
            tokens=TokenIssuer(settings, clock=clock.time),
            clock=clock.now,
        )
        result = await service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        assert result["email"] == "ada@example.com"
        assert store.get_pending_registration("ada@example.com") is not None

    def test_concurrent_verification_creates_one_user(self, auth_service, store):
        asyncio.run(
            auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        )
        code = _pending_otp(store, "ada@example.com")

        def attempt():
            try:
                asyncio.run(auth_service.verify_registration_otp("ada@example.com", code))
                return "ok"
            except (AlreadyExistsError, NotFoundError):
                return "lost"

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(lambda _: attempt(), range(4)))
        assert outcomes.count("ok") == 1
        assert len(store.list_users()) == 1

    def test_concurrent_wrong_codes_never_exceed_attempt_cap(self, auth_service, store):
        asyncio.run(
            auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        )
        wrong = _wrong_code(_pending_otp(store, "ada@example.com"))

        def attempt():
            try:
                asyncio.run(auth_service.verify_registration_otp("ada@example.com", wrong))
            except InvalidOTPError:
                return "mismatch"
            except AttemptsExceededError:
                return "exhausted"
            return "accepted"

        with ThreadPoolExecutor(max_workers=10) as pool:
            outcomes = list(pool.map(lambda _: attempt(), range(10)))
        assert outcomes.count("mismatch") == 5
        assert outcomes.count("exhausted") == 5
        assert store.get_pending_registration("ada@example.com").attempts == 5


class TestLogin:
    async def test_login_returns_tokens_and_records_time(self, auth_service, store, clock):
        await _register(auth_service, store)
        user, tokens = await auth_service.login("ADA@example.com", PASSWORD)
        assert user.last_login == clock.now()
        assert store.get_refresh_token(tokens.refresh_token) is not None

    async def test_each_login_is_a_separate_session(self, auth_service, store):
        await _register(auth_service, store)
        _, first = await auth_service.login("ada@example.com", PASSWORD)
        _, second = await auth_service.login("ada@example.com", PASSWORD)
        assert first.refresh_token != second.refresh_token
        assert store.get_refresh_token(first.refresh_token) is not None
        assert store.get_refresh_token(second.refresh_token) is not None

    async def test_wrong_password_and_unknown_email_look_alike(self, auth_service, store):
        await _register(auth_service, store)
        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth_service.login("ada@example.com", "wrong-password")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            await auth_service.login("ghost@example.com", PASSWORD)
        assert wrong_password.value.message == unknown_email.value.message

    async def test_disabled_account_rejected_after_password_check(self, auth_service, store):
        user, _ = await _register(auth_service, store)
        await auth_service.set_user_active(user.id, False)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ada@example.com", "wrong-password")
        with pytest.raises(AccountDisabledError):
            await auth_service.login("ada@example.com", PASSWORD)


class TestRefresh:
    async def test_refresh_rotates_token(self, auth_service, store):
        _, tokens = await _register(auth_service, store)
        user, rotated = await auth_service.refresh(tokens.refresh_token)
        assert rotated.refresh_token != tokens.refresh_token
        assert store.get_refresh_token(tokens.refresh_token) is None
        assert store.get_refresh_token(rotated.refresh_token).user_id == user.id

    async def test_reused_refresh_token_rejected(self, auth_service, store):
        _, tokens = await _register(auth_service, store)
        await auth_service.refresh(tokens.refresh_token)
        with pytest.raises(InvalidOrExpiredError):
            await auth_service.refresh(tokens.refresh_token)

    async def test_access_token_cannot_refresh(self, auth_service, store):
        _, tokens = await _register(auth_service, store)
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(tokens.access_token)

    async def test_expired_refresh_token(self, auth_service, store, clock):
        _, tokens = await _register(auth_service, store)
        clock.advance(days=1, seconds=1)
        with pytest.raises(TokenExpiredError):
            await auth_service.refresh(tokens.refresh_token)

    async def test_refresh_for_disabled_account(self, auth_service, store):
        user, tokens = await _register(auth_service, store)
        await auth_service.set_user_active(user.id, False)
        with pytest.raises(AccountDisabledError):
            await auth_service.refresh(tokens.refresh_token)

    async def test_non_ascii_refresh_token_is_invalid(self, auth_service, store):
        _, tokens = await _register(auth_service, store)
        header, payload, _ = tokens.refresh_token.split(".")
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(f"{header}.{payload}.sig\u00e9")

    def test_concurrent_refresh_has_single_winner(self, auth_service, store):
        _, tokens = asyncio.run(_register(auth_service, store))

        def attempt():
            try:
                asyncio.run(auth_service.refresh(tokens.refresh_token))
                return "ok"
            except InvalidOrExpiredError:
                return "lost"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(lambda _: attempt(), range(8)))
        assert outcomes.count("ok") == 1
        assert len(store.refresh_tokens) == 1


class TestRevocation:
    async def test_logout_session_scope_keeps_other_sessions(self, auth_service, store):
        user, first = await _register(auth_service, store)
        _, second = await auth_service.login("ada@example.com", PASSWORD)
        scope, revoked = await auth_service.logout(user.id, first.refresh_token)
        assert scope is LogoutScope.SESSION
        assert revoked == 1
        assert store.get_refresh_token(first.refresh_token) is None
        assert store.get_refresh_token(second.refresh_token) is not None

    async def test_logout_without_token_ends_every_session(self, auth_service, store):
        user, first = await _register(auth_service, store)
        await auth_service.login("ada@example.com", PASSWORD)
        scope, revoked = await auth_service.logout(user.id)
        assert scope is LogoutScope.ALL
        assert revoked == 2
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(f"Bearer {first.access_token}")

    async def test_logout_scope_all_override(self, auth_service, store):
        user, first = await _register(auth_service, store)
        await auth_service.login("ada@example.com", PASSWORD)
        scope, revoked = await auth_service.logout(user.id, first.refresh_token, scope="all")
        assert scope is LogoutScope.ALL
        assert revoked == 2

    async def test_logout_ignores_other_users_token(self, auth_service, store):
        ada, _ = await _register(auth_service, store)
        _, grace_tokens = await _register(
            auth_service, store, email="grace@example.com", full_name="Grace Hopper"
        )
        _, revoked = await auth_service.logout(ada.id, grace_tokens.refresh_token)
        assert revoked == 0
        assert store.get_refresh_token(grace_tokens.refresh_token) is not None

    async def test_logout_all_revokes_outstanding_access_tokens(self, auth_service, store):
        user, tokens = await _register(auth_service, store)
        principal = await auth_service.authenticate(f"Bearer {tokens.access_token}")
        assert principal.user_id == user.id
        await auth_service.logout_all(user.id)
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(f"Bearer {tokens.access_token}")
        with pytest.raises(InvalidOrExpiredError):
            await auth_service.refresh(tokens.refresh_token)

    async def test_change_password_revokes_sessions(self, auth_service, store):
        user, tokens = await _register(auth_service, store)
        revoked = await auth_service.change_password(user.id, PASSWORD, "BrandNewPass99")
        assert revoked == 1
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ada@example.com", PASSWORD)
        await auth_service.login("ada@example.com", "BrandNewPass99")
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(f"Bearer {tokens.access_token}")

    async def test_change_password_requires_current(self, auth_service, store):
        user, tokens = await _register(auth_service, store)
        with pytest.raises(InvalidCurrentPasswordError):
            await auth_service.change_password(user.id, "wrong-password", "BrandNewPass99")
        assert store.get_refresh_token(tokens.refresh_token) is not None

    async def test_purge_removes_only_expired_tokens(self, auth_service, store, clock):
        await _register(auth_service, store)
        clock.advance(hours=23)
        _, fresh = await auth_service.login("ada@example.com", PASSWORD)
        clock.advance(hours=2)
        removed = await auth_service.purge_expired_refresh_tokens()
        assert removed == 1
        assert list(store.refresh_tokens) == [fresh.refresh_token]


class TestPasswordReset:
    async def test_full_reset_flow(self, auth_service, store, mailer):
        user, tokens = await _register(auth_service, store)
        await auth_service.request_password_reset("ada@example.com")
        code = store.get_password_reset("ada@example.com").otp
        assert mailer.sent[-1] == ("password_reset", "ada@example.com", code)
        result = await auth_service.verify_password_reset_otp("ada@example.com", code)
        assert result == {"email": "ada@example.com", "verified": True}
        revoked = await auth_service.reset_password("ada@example.com", "ResetPass2026")
        assert revoked == 1
        assert store.get_password_reset("ada@example.com") is None
        await auth_service.login("ada@example.com", "ResetPass2026")
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(f"Bearer {tokens.access_token}")

    async def test_unknown_email_gets_same_response(self, auth_service, mailer):
        result = await auth_service.request_password_reset("ghost@example.com")
        assert result == {"email": "ghost@example.com", "expires_in": 600}
        assert mailer.sent == []

    async def test_reset_requires_verification(self, auth_service, store):
        await _register(auth_service, store)
        await auth_service.request_password_reset("ada@example.com")
        with pytest.raises(NotVerifiedError):
            await auth_service.reset_password("ada@example.com", "ResetPass2026")

    async def test_reset_after_code_expiry(self, auth_service, store, clock):
        await _register(auth_service, store)
        await auth_service.request_password_reset("ada@example.com")
        code = store.get_password_reset("ada@example.com").otp
        await auth_service.verify_password_reset_otp("ada@example.com", code)
        clock.advance(minutes=11)
        with pytest.raises(ExpiredError):
            await auth_service.reset_password("ada@example.com", "ResetPass2026")
        assert store.get_password_reset("ada@example.com") is None

    async def test_reset_verify_counts_attempts(self, auth_service, store):
        await _register(auth_service, store)
        await auth_service.request_password_reset("ada@example.com")
        code = store.get_password_reset("ada@example.com").otp
        for _ in range(5):
            with pytest.raises(InvalidOTPError):
                await auth_service.verify_password_reset_otp("ada@example.com", _wrong_code(code))
        with pytest.raises(AttemptsExceededError):
            await auth_service.verify_password_reset_otp("ada@example.com", code)

    async def test_rerequest_clears_verification(self, auth_service, store):
        await _register(auth_service, store)
        await auth_service.request_password_reset("ada@example.com")
        code = store.get_password_reset("ada@example.com").otp
        await auth_service.verify_password_reset_otp("ada@example.com", code)
        await auth_service.request_password_reset("ada@example.com")
        entry = store.get_password_reset("ada@example.com")
        assert entry.verified is False
        assert entry.attempts == 0

    async def test_verify_without_request_is_not_found(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.verify_password_reset_otp("ada@example.com", "123456")

    async def test_reset_ledger_is_separate_from_registration(self, auth_service, store):
        await auth_service.request_registration_otp("ada@example.com", "Ada", PASSWORD)
        assert store.get_pending_registration("ada@example.com") is not None
        assert store._ledger(Ledger.PASSWORD_RESET).get("ada@example.com") is None


class TestAuthenticate:
    async def test_missing_header(self, auth_service):
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(None)

    async def test_wrong_scheme(self, auth_service, store):
        _, tokens = await _register(auth_service, store)
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(f"Basic {tokens.access_token}")

    async def test_refresh_token_is_not_an_access_token(self, auth_service, store):
        _, tokens = await _register(auth_service, store)
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(f"Bearer {tokens.refresh_token}")

    async def test_expired_access_token(self, auth_service, store, clock):
        _, tokens = await _register(auth_service, store)
        clock.advance(minutes=16)
        with pytest.raises(TokenExpiredError):
            await auth_service.authenticate(f"Bearer {tokens.access_token}")

    async def test_role_change_visible_on_next_request(self, auth_service, store):
        user, tokens = await _register(auth_service, store)
        await auth_service.set_user_role(user.id, "editor")
        principal = await auth_service.authenticate(f"Bearer {tokens.access_token}")
        assert principal.role is Role.EDITOR

    async def test_inactive_user_rejected(self, auth_service, store):
        user, tokens = await _register(auth_service, store)
        await auth_service.set_user_active(user.id, False)
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(f"Bearer {tokens.access_token}")

    async def test_optional_auth_returns_none_on_failure(self, auth_service):
        assert await auth_service.optional_auth(None) is None
        assert await auth_service.optional_auth("Bearer not.a.token") is None

    async def test_non_ascii_signature_is_unauthenticated(self, auth_service, store):
        _, tokens = await _register(auth_service, store)
        header, payload, _ = tokens.access_token.split(".")
        forged = f"Bearer {header}.{payload}.sig\u00e9"
        assert await auth_service.optional_auth(forged) is None
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(forged)


class TestAdmin:
    async def test_unknown_role_rejected(self, auth_service, store):
        user, _ = await _register(auth_service, store)
        with pytest.raises(ValidationError):
            await auth_service.set_user_role(user.id, "SUPERUSER")

    async def test_set_role_for_missing_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.set_user_role("missing", Role.ADMIN)

    async def test_provision_user_skips_otp(self, auth_service, store):
        user = await auth_service.provision_user(
            "Root@Example.com", "Root", PASSWORD, role=Role.ADMIN
        )
        assert user.role is Role.ADMIN
        assert user.email == "root@example.com"
        logged_in, _ = await auth_service.login("root@example.com", PASSWORD)
        assert logged_in.id == user.id

    async def test_provision_duplicate_conflicts(self, auth_service, store):
        await _register(auth_service, store)
        with pytest.raises(AlreadyExistsError):
            await auth_service.provision_user("ada@example.com", "Ada", PASSWORD)
