from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ..shared.timeutil import now_iso

_PROFILE_INDEX_PK = "TYPE#USER_PROFILE"

# Fields a user may edit on their own profile. Identity fields (userId, email)
# come from the verified token.
EDITABLE_PROFILE_FIELDS = (
    "fullName",
    "fieldOfStudy",
    "country",
    "emailNotifications",
    "browserNotifications",
)


def user_profile_key(*, user_id: str) -> dict[str, str]:
    uid = str(user_id or "").strip()
    if not uid:
        raise ValueError("user_id is required")
    return {"pk": f"USER#{uid}", "sk": "PROFILE"}


def normalize_user_profile_for_api(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = dict(item)
    out["_id"] = str(item.get("userId") or "").strip() or None
    for k in ("pk", "sk", "gsi1pk", "gsi1sk", "entityType"):
        out.pop(k, None)
    out["emailNotifications"] = bool(out.get("emailNotifications"))
    out["browserNotifications"] = bool(out.get("browserNotifications"))
    return out


def get_user_profile(*, user_id: str) -> dict[str, Any] | None:
    it = get_main_table().get_item(key=user_profile_key(user_id=user_id))
    return normalize_user_profile_for_api(it)


def upsert_user_profile(*, user_id: str, email: str | None, updates: dict[str, Any]) -> dict[str, Any]:
    """
    Upsert the profile row. `user_id` and `email` are authoritative from auth,
    not from client input; unknown update keys are ignored.
    """
    uid = str(user_id or "").strip()
    if not uid:
        raise ValueError("user_id is required")

    existing = get_main_table().get_item(key=user_profile_key(user_id=uid)) or {}
    now = now_iso()

    item: dict[str, Any] = {
        "fullName": None,
        "fieldOfStudy": None,
        "country": None,
        "emailNotifications": True,
        "browserNotifications": False,
    }
    item.update({k: v for k, v in existing.items() if k not in ("pk", "sk")})
    item.update({k: v for k, v in (updates or {}).items() if k in EDITABLE_PROFILE_FIELDS})

    item.update(
        {
            **user_profile_key(user_id=uid),
            "entityType": "UserProfile",
            "userId": uid,
            "email": str(email or "").strip().lower() or existing.get("email") or None,
            "createdAt": str(existing.get("createdAt") or now),
            "updatedAt": now,
            "gsi1pk": _PROFILE_INDEX_PK,
            "gsi1sk": f"{uid}",
        }
    )
    get_main_table().put_item(item=item)
    return normalize_user_profile_for_api(item) or {}


def list_all_profiles() -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_PROFILE_INDEX_PK),
    )
    return [p for p in (normalize_user_profile_for_api(it) for it in items) if p]
