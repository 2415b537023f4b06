from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..errors import ValidationError
from ..modules.identity.roles import Role, parse_role
from ..modules.toggles import feature_toggles
from ..observability.logging import get_logger
from ..repositories import activity_log_repo, user_roles_repo
from . import deps
from .opportunities import OpportunityDraft

router = APIRouter(tags=["admin"])
log = get_logger("admin_router")


class AdminOpportunityRequest(OpportunityDraft):
    publish: bool = False


class ScrapedSubmissionRequest(OpportunityDraft):
    sourceUrl: str = Field(..., min_length=1)


class OpportunityPatch(OpportunityDraft):
    status: str | None = None
    isPublished: bool | None = None


class ReviewRequest(BaseModel):
    notes: str | None = None
    reason: str | None = None


class ToggleRequest(BaseModel):
    isEnabled: bool
    description: str | None = None


class GrantRoleRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)


# --- listings ---


@router.get("/submissions")
def list_submissions(request: Request, status: str = "pending", limit: int = 50, nextToken: str | None = None):
    deps.require_moderator(request)
    return {"ok": True, **deps.store().list_by_status(status, limit=limit, next_token=nextToken)}


@router.post("/submissions/scraped")
def ingest_scraped(request: Request, body: ScrapedSubmissionRequest):
    caller = deps.require_moderator(request)
    res = deps.workflow().submit(body.model_dump(exclude_none=True), submitter_id=caller.user_id, source="scraped")
    return {"ok": True, **res}


@router.post("/opportunities")
def create_opportunity(request: Request, body: AdminOpportunityRequest):
    caller = deps.require_moderator(request)
    data = body.model_dump(exclude_none=True)
    publish = bool(data.pop("publish", False))
    if publish:
        opp = deps.workflow().create_and_publish(data, admin_id=caller.user_id, admin_role=caller.role)
    else:
        opp = deps.store().create(data, actor_id=caller.user_id, actor_role=caller.role, source="admin_created")
    return {"ok": True, "opportunity": opp}


@router.patch("/opportunities/{opportunityId}")
def update_opportunity(request: Request, opportunityId: str, body: OpportunityPatch):
    caller = deps.require_moderator(request)
    patch = body.model_dump(exclude_unset=True)
    opp = deps.store().update(opportunityId, patch, actor_id=caller.user_id)
    return {"ok": True, "opportunity": opp}


@router.delete("/opportunities/{opportunityId}")
def delete_opportunity(request: Request, opportunityId: str):
    caller = deps.require_admin(request)
    res = deps.store().delete(opportunityId, actor_id=caller.user_id)
    opp = res.get("opportunity") or {}
    try:
        activity_log_repo.log_activity(
            admin_id=caller.user_id,
            action=activity_log_repo.OPPORTUNITY_DELETED,
            target_type="opportunity",
            target_id=opportunityId,
            details={"title": opp.get("title"), "organization": opp.get("organization")},
        )
    except Exception as e:
        log.warning("activity_log_failed", action="OPPORTUNITY_DELETED", error=str(e))
    return {"ok": True, "deleted": True, "dependentsRemoved": res.get("dependentsRemoved", 0)}


@router.post("/opportunities/{opportunityId}/approve")
def approve(request: Request, opportunityId: str, body: ReviewRequest | None = None):
    caller = deps.require_moderator(request)
    opp = deps.workflow().approve(opportunityId, reviewer_id=caller.user_id, notes=body.notes if body else None)
    return {"ok": True, "opportunity": opp}


@router.post("/opportunities/{opportunityId}/reject")
def reject(request: Request, opportunityId: str, body: ReviewRequest | None = None):
    caller = deps.require_moderator(request)
    opp = deps.workflow().reject(opportunityId, reviewer_id=caller.user_id, reason=body.reason if body else None)
    return {"ok": True, "opportunity": opp}


@router.post("/opportunities/{opportunityId}/publish")
def publish(request: Request, opportunityId: str):
    caller = deps.require_moderator(request)
    return {"ok": True, "opportunity": deps.workflow().publish(opportunityId, actor_id=caller.user_id)}


@router.post("/opportunities/{opportunityId}/unpublish")
def unpublish(request: Request, opportunityId: str):
    caller = deps.require_moderator(request)
    return {"ok": True, "opportunity": deps.workflow().unpublish(opportunityId, actor_id=caller.user_id)}


@router.get("/analytics")
def analytics(request: Request, limit: int = 50):
    deps.require_moderator(request)
    return {"ok": True, "data": deps.tracker().analytics(limit=limit)}


# --- feature toggles ---


@router.get("/toggles")
def list_toggles(request: Request):
    deps.require_admin(request)
    return {"ok": True, "data": feature_toggles.list_toggles()}


@router.put("/toggles/{featureKey}")
def put_toggle(request: Request, featureKey: str, body: ToggleRequest):
    caller = deps.require_admin(request)
    row = feature_toggles.set_toggle(
        feature_key=featureKey,
        is_enabled=body.isEnabled,
        admin_id=caller.user_id,
        description=body.description,
    )
    return {"ok": True, "toggle": row}


# --- roles ---


@router.post("/roles")
def grant_role(request: Request, body: GrantRoleRequest):
    caller = deps.require_admin(request)
    role = parse_role(body.role)
    if role is None:
        raise ValidationError(message=f"Unknown role: {body.role}", fields=["role"])
    res = user_roles_repo.grant_role(user_id=body.userId, role=role.value, granted_by=caller.user_id)
    if res.get("created") and role is Role.ADMIN:
        activity_log_repo.log_activity(
            admin_id=caller.user_id,
            action=activity_log_repo.ADMIN_ROLE_ASSIGNED,
            target_type="user",
            target_id=body.userId,
            details={"source": "admin"},
        )
    return {"ok": True, **res}


# --- sweeper ---


@router.post("/sweeper/run")
def run_sweeper(request: Request) -> dict[str, Any]:
    deps.require_admin(request)
    return deps.sweeper().run()


@router.get("/sweeper/preview/expired")
def preview_expired(request: Request):
    deps.require_admin(request)
    return {"ok": True, "data": deps.sweeper().preview_expired()}


@router.get("/sweeper/preview/upcoming")
def preview_upcoming(request: Request):
    deps.require_admin(request)
    return {"ok": True, "data": deps.sweeper().preview_upcoming()}


@router.get("/sweeper/stats")
def sweeper_stats(request: Request, daysBack: int = 30):
    deps.require_admin(request)
    return {"ok": True, **deps.sweeper().stats(days_back=daysBack)}


@router.get("/sweeper/logs")
def sweeper_logs(request: Request, page: int = 1, pageSize: int = 20, search: str | None = None):
    deps.require_admin(request)
    return {"ok": True, **deps.sweeper().logs(page=page, page_size=pageSize, search=search)}
