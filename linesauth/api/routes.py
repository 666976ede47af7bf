from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from linesauth.api.dependencies import (
    authenticate,
    enforce_user_rate_limit,
    optional_auth,
    require_ownership,
    require_roles,
)
from linesauth.api.schemas import (
    AdminUserUpdateRequest,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    OTPDispatchResponse,
    OTPVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetVerifyRequest,
    PasswordUpdateResponse,
    PurgeResponse,
    RegistrationOTPRequest,
    ResendOTPRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserListResponse,
    UserResponse,
)
from linesauth.logging import get_logger
from linesauth.service.auth import AuthContext
from linesauth.service.errors import NotFoundError, ValidationError
from linesauth.service.runtime import get_runtime
from linesauth.service.tokens import TokenPair
from linesauth.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

require_admin = require_roles(Role.ADMIN)


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_response(user: User, tokens: TokenPair) -> AuthResponse:
    return AuthResponse(user=UserResponse.from_user(user), tokens=_token_response(tokens))


# -- registration -----------------------------------------------------------------


@router.post("/auth/register/request-otp", response_model=Envelope, tags=["auth"])
async def request_registration_otp(body: RegistrationOTPRequest):
    """Start a registration by sending a one-time code to the email.

    Re-requesting for the same email replaces the earlier code.

    Raises:
        409: If an account already exists for the email
    """
    runtime = get_runtime()
    result = await runtime.auth.request_registration_otp(
        body.email, body.full_name, body.password
    )
    return Envelope(status="ok", data=OTPDispatchResponse(**result))


@router.post(
    "/auth/register/verify-otp", response_model=Envelope, status_code=201, tags=["auth"]
)
async def verify_registration_otp(body: OTPVerifyRequest):
    """Confirm the code, create the account and open a session."""
    runtime = get_runtime()
    user, tokens = await runtime.auth.verify_registration_otp(body.email, body.otp)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/register/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_registration_otp(body: ResendOTPRequest):
    runtime = get_runtime()
    result = await runtime.auth.resend_registration_otp(body.email)
    return Envelope(status="ok", data=OTPDispatchResponse(**result))


# -- sessions ---------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is disabled
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Exchange a refresh token for a new pair; the presented token stops working."""
    runtime = get_runtime()
    user, tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(enforce_user_rate_limit),
):
    """End the session named by ``refresh_token``.

    ``scope`` overrides the server default; without a token every session of
    the caller ends.
    """
    runtime = get_runtime()
    body = body or LogoutRequest()
    scope, revoked = await runtime.auth.logout(
        principal.user_id, body.refresh_token, scope=body.scope
    )
    return Envelope(status="ok", data=LogoutResponse(scope=scope.value, revoked=revoked))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(enforce_user_rate_limit)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data=LogoutResponse(scope="all", revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(authenticate)):
    runtime = get_runtime()
    user = await runtime.auth.get_current_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/auth/status", response_model=Envelope, tags=["auth"])
async def session_status(principal: Optional[AuthContext] = Depends(optional_auth)):
    """Report whether the request carries a valid access token; never fails."""
    return Envelope(
        status="ok",
        data={
            "authenticated": principal is not None,
            "user": UserResponse.from_user(principal.user) if principal else None,
        },
    )


@router.put("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(enforce_user_rate_limit),
):
    """Change the caller's password; every session of the caller ends."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=PasswordUpdateResponse(revoked_sessions=revoked))


# -- password reset ---------------------------------------------------------------


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    """Send a reset code. The response is identical whether or not the account exists."""
    runtime = get_runtime()
    result = await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=OTPDispatchResponse(**result))


@router.post("/auth/password-reset/verify", response_model=Envelope, tags=["auth"])
async def verify_password_reset(body: PasswordResetVerifyRequest):
    runtime = get_runtime()
    result = await runtime.auth.verify_password_reset_otp(body.email, body.otp)
    return Envelope(status="ok", data=result)


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    revoked = await runtime.auth.reset_password(body.email, body.new_password)
    return Envelope(status="ok", data=PasswordUpdateResponse(revoked_sessions=revoked))


# -- users ------------------------------------------------------------------------


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_profile(
    user_id: str,
    principal: AuthContext = Depends(require_ownership("user_id")),
):
    """Fetch an account; callers see their own, admins see any."""
    runtime = get_runtime()
    user = runtime.store.get_user(user_id)
    if not user:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- admin ------------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(require_admin),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]),
    )


@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    user_id: str,
    body: AdminUserUpdateRequest,
    principal: AuthContext = Depends(require_admin),
    _: AuthContext = Depends(enforce_user_rate_limit),
):
    """Change a user's role and/or active flag. Takes effect on their next request."""
    runtime = get_runtime()
    if user_id == principal.user_id and body.is_active is False:
        raise ValidationError("cannot deactivate your own account", detail={"field": "is_active"})
    user = None
    if body.parsed_role is not None:
        user = await runtime.auth.set_user_role(user_id, body.parsed_role)
    if body.is_active is not None:
        user = await runtime.auth.set_user_active(user_id, body.is_active)
    logger.info(
        "admin_user_updated",
        actor_id=principal.user_id,
        user_id=user_id,
        role=body.role,
        is_active=body.is_active,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/refresh-tokens/purge", response_model=Envelope, tags=["admin"])
async def admin_purge_refresh_tokens(
    principal: AuthContext = Depends(require_admin),
    _: AuthContext = Depends(enforce_user_rate_limit),
):
    runtime = get_runtime()
    removed = await runtime.auth.purge_expired_refresh_tokens()
    return Envelope(status="ok", data=PurgeResponse(removed=removed))
