from __future__ import annotations

import uuid
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ..shared.timeutil import now_iso

SYSTEM_ADMIN_ID = "00000000-0000-0000-0000-000000000000"

SUBMISSION_APPROVED = "SUBMISSION_APPROVED"
SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
OPPORTUNITY_PUBLISHED = "OPPORTUNITY_PUBLISHED"
OPPORTUNITY_UNPUBLISHED = "OPPORTUNITY_UNPUBLISHED"
OPPORTUNITY_DELETED = "OPPORTUNITY_DELETED"
OPPORTUNITY_AUTO_DELETED = "OPPORTUNITY_AUTO_DELETED"
BATCH_AUTO_DELETION_COMPLETED = "BATCH_AUTO_DELETION_COMPLETED"
FEATURE_TOGGLE_UPDATED = "FEATURE_TOGGLE_UPDATED"
ADMIN_ROLE_ASSIGNED = "ADMIN_ROLE_ASSIGNED"

_PK = "ACTIVITY"


def normalize_activity_for_api(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = {k: v for k, v in item.items() if k not in ("pk", "sk", "entityType")}
    out["_id"] = str(item.get("activityId") or "").strip() or None
    return out


def log_activity(
    *,
    admin_id: str | None,
    action: str,
    target_type: str,
    target_id: str | None = None,
    details: dict[str, Any] | None = None,
    created_at: str | None = None,
) -> dict[str, Any]:
    aid = uuid.uuid4().hex
    ts = created_at or now_iso()
    item = {
        "pk": _PK,
        "sk": f"{ts}#{aid}",
        "entityType": "AdminActivity",
        "activityId": aid,
        "adminId": admin_id or SYSTEM_ADMIN_ID,
        "action": str(action),
        "targetType": str(target_type),
        "targetId": target_id,
        "details": details if isinstance(details, dict) else {},
        "createdAt": ts,
    }
    get_main_table().put_item(item=item)
    return normalize_activity_for_api(item) or {}


def list_activity_since(since_iso: str | None = None, *, action: str | None = None) -> list[dict[str, Any]]:
    """Newest first. Filters by action in memory."""
    cond = Key("pk").eq(_PK)
    if since_iso:
        cond = cond & Key("sk").gte(since_iso)
    items = get_main_table().query_all(key_condition_expression=cond, scan_index_forward=False)
    out = [a for a in (normalize_activity_for_api(it) for it in items) if a]
    if action:
        out = [a for a in out if a.get("action") == action]
    return out
