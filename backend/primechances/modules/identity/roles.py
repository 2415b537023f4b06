from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, assert_never


class Role(str, Enum):
    USER = "user"
    STAFF_ADMIN = "staff_admin"
    ADMIN = "admin"


def parse_role(value: Any) -> Role | None:
    """Accept stored/common variants ("Admin", "staff-admin", "member")."""
    s = str(value or "").strip().lower().replace("-", "_")
    if not s:
        return None
    if s in ("admin", "administrator"):
        return Role.ADMIN
    if s in ("staff_admin", "staffadmin", "staff"):
        return Role.STAFF_ADMIN
    if s in ("user", "member", "basic"):
        return Role.USER
    return None


def resolve_role(values: Iterable[Any] | Any) -> Role:
    """
    Collapse a user's role rows into one effective role.

    Precedence: ADMIN > STAFF_ADMIN > USER. Unknown values are ignored.
    """
    if isinstance(values, (str, Role)) or values is None:
        values = [values]
    roles = {r for r in (parse_role(v) for v in values) if r is not None}
    if Role.ADMIN in roles:
        return Role.ADMIN
    if Role.STAFF_ADMIN in roles:
        return Role.STAFF_ADMIN
    return Role.USER


def can_moderate(role: Role) -> bool:
    """Approve/reject/publish/unpublish submissions, edit listings."""
    match role:
        case Role.ADMIN | Role.STAFF_ADMIN:
            return True
        case Role.USER:
            return False
        case _:
            assert_never(role)


def can_administer(role: Role) -> bool:
    """Delete listings, edit feature toggles, assign roles, run the sweeper."""
    match role:
        case Role.ADMIN:
            return True
        case Role.STAFF_ADMIN | Role.USER:
            return False
        case _:
            assert_never(role)


def is_admin_like(role: Role) -> bool:
    """Admin-created listings are auto-approved for these roles."""
    return can_moderate(role)
