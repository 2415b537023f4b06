from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.identity.admin_allowlist import assign_admin_role, effective_role
from ..repositories.user_profiles_repo import get_user_profile, upsert_user_profile
from ..settings import get_lifecycle_config
from . import deps

router = APIRouter(tags=["profile"])


class PutProfileRequest(BaseModel):
    fullName: str | None = Field(default=None, max_length=200)
    fieldOfStudy: str | None = Field(default=None, max_length=200)
    country: str | None = Field(default=None, max_length=120)
    emailNotifications: bool | None = None
    browserNotifications: bool | None = None


@router.get("/profile")
def get_profile(request: Request):
    caller = deps.current_caller(request)
    profile = get_user_profile(user_id=caller.user_id)
    if not profile:
        profile = upsert_user_profile(user_id=caller.user_id, email=caller.email, updates={})
    return {"ok": True, "profile": profile, "role": caller.role.value}


@router.put("/profile")
def put_profile(request: Request, body: PutProfileRequest):
    caller = deps.current_caller(request)
    updates = body.model_dump(exclude_unset=True)
    for k in ("fullName", "fieldOfStudy", "country"):
        if k in updates:
            updates[k] = str(updates[k] or "").strip() or None
    profile = upsert_user_profile(user_id=caller.user_id, email=caller.email, updates=updates)
    return {"ok": True, "profile": profile}


@router.post("/profile/admin-role")
def claim_admin_role(request: Request):
    """Called after sign-in: grants admin when the verified e-mail is allow-listed."""
    caller = deps.current_caller(request)
    res = assign_admin_role(
        user_id=caller.user_id,
        email=caller.email or "",
        admin_emails=get_lifecycle_config().admin_emails,
    )
    return {"ok": True, **res, "role": effective_role(caller.user_id).value}
