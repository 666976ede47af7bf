"""FastAPI dependencies forming the Auth Gateway.

Other routers reuse these to protect their endpoints::

    @router.post("/articles/{author_id}/publish")
    async def publish(
        principal: AuthContext = Depends(require_ownership("author_id", field="author_id")),
        _: AuthContext = Depends(enforce_user_rate_limit),
    ): ...
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request, Response

from linesauth.service.access import authorize, check_ownership
from linesauth.service.auth import AuthContext
from linesauth.service.errors import TooManyRequestsError
from linesauth.service.runtime import check_rate_limit, get_runtime
from linesauth.storage.models import Role


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers to response per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def authenticate(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def optional_auth(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    runtime = get_runtime()
    return await runtime.auth.optional_auth(authorization)


def require_roles(*roles: Role | str):
    """Dependency factory admitting only callers whose role is in ``roles``."""
    allowed = frozenset(Role.parse(role) for role in roles)

    async def _require_roles(principal: AuthContext = Depends(authenticate)) -> AuthContext:
        authorize(principal.role, allowed)
        return principal

    return _require_roles


def require_ownership(param: str = "user_id", *, field: Optional[str] = None):
    """Dependency factory checking that the caller owns the resource in path ``param``."""
    ownership_field = field or param

    async def _require_ownership(
        request: Request, principal: AuthContext = Depends(authenticate)
    ) -> AuthContext:
        check_ownership(principal.user, request.path_params.get(param), ownership_field)
        return principal

    return _require_ownership


async def enforce_user_rate_limit(
    response: Response, principal: AuthContext = Depends(authenticate)
) -> AuthContext:
    """Count the request against the caller's sliding window."""
    runtime = get_runtime()
    decision = await check_rate_limit(runtime, f"user:{principal.user_id}")
    if not decision.allowed:
        raise TooManyRequestsError(
            "rate limit exceeded",
            detail={"retry_after": decision.retry_after_seconds, "limit": decision.limit},
        )
    RateLimitInfo(
        decision.limit, decision.remaining, runtime.settings.rate_limit_window_seconds
    ).apply_headers(response)
    return principal
