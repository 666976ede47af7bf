"""Authorization decisions shared by every protected route.

All role checks go through :func:`authorize` (or its boolean form
:func:`role_allows`); call sites never compare role strings themselves.
"""

from __future__ import annotations

from typing import Iterable, Optional

from linesauth.service.errors import ForbiddenError
from linesauth.storage.models import Role, User

# Fields naming the author of a piece of content. Ad managers may act on
# content they did not write, but not on other people's accounts.
CONTENT_OWNERSHIP_FIELDS = frozenset({"author_id", "created_by"})


def _normalize_roles(allowed: Iterable[Role | str]) -> frozenset[Role]:
    return frozenset(Role.parse(role) for role in allowed)


def role_allows(role: Role | str, allowed: Iterable[Role | str]) -> bool:
    try:
        parsed = Role.parse(role)
    except ValueError:
        return False
    return parsed in _normalize_roles(allowed)


def authorize(role: Role | str, allowed: Iterable[Role | str]) -> None:
    """Raise ``ForbiddenError`` unless ``role`` is one of ``allowed``."""
    allowed_roles = _normalize_roles(allowed)
    if not role_allows(role, allowed_roles):
        raise ForbiddenError(
            "insufficient permissions",
            detail={"required_roles": sorted(r.value for r in allowed_roles)},
        )


def check_ownership(user: User, owner_id: Optional[str], field: str = "user_id") -> None:
    if user.role is Role.ADMIN:
        return
    if user.role is Role.AD_MANAGER and field in CONTENT_OWNERSHIP_FIELDS:
        return
    if owner_id is None or user.id != str(owner_id):
        raise ForbiddenError("not the owner of this resource", detail={"field": field})
