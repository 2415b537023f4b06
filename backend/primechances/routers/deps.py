from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from ..errors import PermissionDeniedError
from ..modules.engagement.engagement_tracker import EngagementTracker
from ..modules.identity.admin_allowlist import effective_role
from ..modules.identity.roles import Role, can_administer, can_moderate
from ..modules.notifications.dispatcher import NotificationDispatcher
from ..modules.opportunities.opportunity_store import OpportunityStore
from ..modules.sweeper.deadline_sweeper import DeadlineSweeper
from ..modules.workflow.submission_workflow import SubmissionWorkflow
from ..settings import get_lifecycle_config


@dataclass(frozen=True)
class Caller:
    user_id: str
    email: str | None
    role: Role


def optional_caller(request: Request) -> Caller | None:
    user = getattr(request.state, "user", None)
    sub = str(getattr(user, "sub", "") or "").strip() if user else ""
    if not sub:
        return None
    email = str(getattr(user, "email", "") or "").strip().lower() or None
    return Caller(user_id=sub, email=email, role=effective_role(sub))


def current_caller(request: Request) -> Caller:
    caller = optional_caller(request)
    if not caller:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return caller


def require_moderator(request: Request) -> Caller:
    caller = current_caller(request)
    if not can_moderate(caller.role):
        raise PermissionDeniedError(message="Moderator access required")
    return caller


def require_admin(request: Request) -> Caller:
    caller = current_caller(request)
    if not can_administer(caller.role):
        raise PermissionDeniedError(message="Admin access required")
    return caller


def store() -> OpportunityStore:
    return OpportunityStore(get_lifecycle_config())


def workflow() -> SubmissionWorkflow:
    return SubmissionWorkflow(get_lifecycle_config())


def tracker() -> EngagementTracker:
    return EngagementTracker(get_lifecycle_config())


def dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(get_lifecycle_config())


def sweeper() -> DeadlineSweeper:
    return DeadlineSweeper(get_lifecycle_config())
