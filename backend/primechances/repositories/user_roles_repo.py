from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ..shared.timeutil import now_iso


def role_key(*, user_id: str, role: str) -> dict[str, str]:
    uid = str(user_id or "").strip()
    r = str(role or "").strip().lower()
    if not uid or not r:
        raise ValueError("user_id and role are required")
    return {"pk": f"USER#{uid}", "sk": f"ROLE#{r}"}


def list_roles(*, user_id: str) -> list[str]:
    uid = str(user_id or "").strip()
    if not uid:
        return []
    items = get_main_table().query_all(
        key_condition_expression=Key("pk").eq(f"USER#{uid}") & Key("sk").begins_with("ROLE#"),
    )
    return [str(it.get("role") or "") for it in items if it.get("role")]


def grant_role(*, user_id: str, role: str, granted_by: str | None = None) -> dict[str, Any]:
    """
    Insert the (user, role) row. Returns {"created": bool}; an existing row is
    left untouched.
    """
    key = role_key(user_id=user_id, role=role)
    item = {
        **key,
        "entityType": "UserRole",
        "userId": str(user_id).strip(),
        "role": str(role).strip().lower(),
        "grantedBy": granted_by,
        "createdAt": now_iso(),
    }
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    except DdbConflict:
        return {"created": False, "role": item["role"]}
    return {"created": True, "role": item["role"]}


def revoke_role(*, user_id: str, role: str) -> None:
    get_main_table().delete_item(key=role_key(user_id=user_id, role=role))
