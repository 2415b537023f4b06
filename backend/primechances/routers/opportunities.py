from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..errors import NotFoundError
from ..modules.identity.roles import can_moderate
from . import deps

router = APIRouter(tags=["opportunities"])


class OpportunityDraft(BaseModel):
    title: str | None = None
    organization: str | None = None
    description: str | None = None
    categoryId: str | None = None
    tags: list[str] | None = None
    requirements: list[str] | None = None
    benefits: list[str] | None = None
    location: str | None = None
    isRemote: bool | None = None
    salaryRange: str | None = None
    applicationDeadline: str | None = None
    applicationUrl: str | None = None
    sourceUrl: str | None = None
    isFeatured: bool | None = None


class BookmarkRequest(BaseModel):
    desired: bool | None = None


def _visible(opp: dict[str, Any], caller: deps.Caller | None) -> bool:
    if opp.get("isPublished") and not opp.get("isExpired"):
        return True
    if caller is None:
        return False
    return can_moderate(caller.role) or caller.user_id == opp.get("submittedBy")


def _matches(opp: dict[str, Any], *, category_id: str | None, q: str | None) -> bool:
    if category_id and opp.get("categoryId") != category_id:
        return False
    if q:
        term = q.strip().lower()
        hay = " ".join(
            str(opp.get(k) or "") for k in ("title", "organization", "description", "location")
        ).lower()
        hay += " " + " ".join(str(t) for t in (opp.get("tags") or [])).lower()
        if term not in hay:
            return False
    return True


@router.get("/opportunities")
def list_opportunities(
    request: Request,
    categoryId: str | None = None,
    q: str | None = None,
    limit: int = 50,
):
    rows = deps.store().list_published()
    data = [o for o in rows if _matches(o, category_id=categoryId, q=q)]
    # Featured first, then newest publication first.
    featured = [o for o in data if o.get("isFeatured")]
    rest = [o for o in data if not o.get("isFeatured")]
    featured.sort(key=lambda o: str(o.get("publishedAt") or ""), reverse=True)
    rest.sort(key=lambda o: str(o.get("publishedAt") or ""), reverse=True)
    ordered = featured + rest
    lim = max(1, min(200, int(limit or 50)))
    return {"ok": True, "data": ordered[:lim], "total": len(ordered)}


@router.get("/opportunities/{opportunityId}")
def get_opportunity(request: Request, opportunityId: str):
    caller = deps.optional_caller(request)
    opp = deps.store().get(opportunityId)
    if not _visible(opp, caller):
        raise NotFoundError(message="Opportunity not found", opportunity_id=opportunityId)
    return {"ok": True, "opportunity": opp}


@router.get("/opportunities/{opportunityId}/engagement")
def engagement_status(request: Request, opportunityId: str):
    caller = deps.current_caller(request)
    return {"ok": True, **deps.tracker().engagement_status(user_id=caller.user_id, opportunity_id=opportunityId)}


@router.post("/opportunities/{opportunityId}/view")
def record_view(opportunityId: str):
    return {"ok": True, **deps.tracker().record_view(opportunityId)}


@router.post("/opportunities/{opportunityId}/share")
def record_share(opportunityId: str):
    return {"ok": True, **deps.tracker().record_share(opportunityId)}


@router.post("/opportunities/{opportunityId}/bookmark")
def toggle_bookmark(request: Request, opportunityId: str, body: BookmarkRequest | None = None):
    caller = deps.current_caller(request)
    res = deps.tracker().toggle_bookmark(
        user_id=caller.user_id,
        opportunity_id=opportunityId,
        desired=body.desired if body else None,
    )
    return {"ok": True, **res}


@router.post("/opportunities/{opportunityId}/apply")
def apply(request: Request, opportunityId: str):
    caller = deps.current_caller(request)
    return {"ok": True, **deps.tracker().record_application(user_id=caller.user_id, opportunity_id=opportunityId)}


@router.get("/me/bookmarks")
def my_bookmarks(request: Request, limit: int = 50, nextToken: str | None = None):
    caller = deps.current_caller(request)
    return {"ok": True, **deps.tracker().list_bookmarks(user_id=caller.user_id, limit=limit, next_token=nextToken)}


@router.get("/me/applications")
def my_applications(request: Request, limit: int = 50, nextToken: str | None = None):
    caller = deps.current_caller(request)
    return {
        "ok": True,
        **deps.tracker().list_applications(user_id=caller.user_id, limit=limit, next_token=nextToken),
    }


@router.post("/submissions")
def submit_opportunity(request: Request, body: OpportunityDraft):
    caller = deps.current_caller(request)
    res = deps.workflow().submit(
        body.model_dump(exclude_none=True),
        submitter_id=caller.user_id,
        source="user_submitted",
    )
    return {"ok": True, **res}
