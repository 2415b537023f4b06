from __future__ import annotations

from typing import Any

from ...errors import InvalidStateError

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

# Moderation status graph. Publication is a separate gate on approved rows.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({APPROVED, REJECTED}),
    APPROVED: frozenset(),
    REJECTED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def assert_transition(*, opportunity: dict[str, Any], target: str) -> str:
    """Return the current status, or raise InvalidStateError."""
    current = str(opportunity.get("status") or PENDING)
    if not can_transition(current, target):
        raise InvalidStateError(
            message=f"Cannot move opportunity from {current} to {target}",
            opportunity_id=opportunity.get("_id"),
            current_status=current,
            attempted=target,
        )
    return current


def assert_publishable(opportunity: dict[str, Any]) -> None:
    status = str(opportunity.get("status") or PENDING)
    if status != APPROVED:
        raise InvalidStateError(
            message="Only approved opportunities can be published",
            opportunity_id=opportunity.get("_id"),
            current_status=status,
            attempted="publish",
        )
    if opportunity.get("isExpired"):
        raise InvalidStateError(
            message="Expired opportunities cannot be published",
            opportunity_id=opportunity.get("_id"),
            current_status=status,
            attempted="publish",
        )


def compute_stage(opportunity: dict[str, Any]) -> str:
    """Display stage: pending | approved | published | rejected | expired."""
    status = str(opportunity.get("status") or PENDING)
    if opportunity.get("isExpired"):
        return "expired"
    if status == APPROVED and opportunity.get("isPublished"):
        return "published"
    return status
