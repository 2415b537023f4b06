from __future__ import annotations

from typing import Any

from ...errors import ValidationError
from ...infrastructure.allowlist import is_allowed_email
from ...observability.logging import get_logger
from ...repositories import activity_log_repo, user_roles_repo
from .roles import Role, resolve_role

log = get_logger("admin_allowlist")


def assign_admin_role(*, user_id: str, email: str, admin_emails: tuple[str, ...] | list[str]) -> dict[str, Any]:
    """
    Grant the admin role when `email` is on the configured allow-list.

    Idempotent: an existing admin row is kept and reported as admin.
    """
    uid = str(user_id or "").strip()
    em = str(email or "").strip()
    missing = [n for n, v in (("user_id", uid), ("email", em)) if not v]
    if missing:
        raise ValidationError(message="Missing user_id or email", fields=missing)

    if not admin_emails:
        log.info("admin_allowlist_not_configured", user_id=uid)
        return {"message": "No admin emails configured", "is_admin": False}

    if not is_allowed_email(em, admin_emails):
        return {"message": "User is not an admin", "is_admin": False}

    res = user_roles_repo.grant_role(user_id=uid, role=Role.ADMIN.value, granted_by="allowlist")
    if res.get("created"):
        log.info("admin_role_assigned", user_id=uid)
        try:
            activity_log_repo.log_activity(
                admin_id=None,
                action=activity_log_repo.ADMIN_ROLE_ASSIGNED,
                target_type="user",
                target_id=uid,
                details={"source": "allowlist"},
            )
        except Exception as e:
            log.warning("activity_log_failed", action="ADMIN_ROLE_ASSIGNED", error=str(e))
    return {"message": "Admin role assigned", "is_admin": True}


def effective_role(user_id: str | None) -> Role:
    if not user_id:
        return Role.USER
    return resolve_role(user_roles_repo.list_roles(user_id=user_id))
