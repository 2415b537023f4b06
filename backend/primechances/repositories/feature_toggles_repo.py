from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ..shared.timeutil import now_iso

_TOGGLE_INDEX_PK = "TYPE#FEATURE_TOGGLE"


def toggle_key(feature_key: str) -> dict[str, str]:
    fk = str(feature_key or "").strip()
    if not fk:
        raise ValueError("feature_key is required")
    return {"pk": f"FEATURE#{fk}", "sk": "TOGGLE"}


def normalize_toggle_for_api(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = {k: v for k, v in item.items() if k not in ("pk", "sk", "gsi1pk", "gsi1sk", "entityType")}
    out["_id"] = str(item.get("featureKey") or "").strip() or None
    out["isEnabled"] = bool(item.get("isEnabled"))
    return out


def get_toggle(feature_key: str) -> dict[str, Any] | None:
    return normalize_toggle_for_api(get_main_table().get_item(key=toggle_key(feature_key), consistent_read=True))


def put_toggle(
    *,
    feature_key: str,
    is_enabled: bool,
    description: str | None = None,
    updated_by: str | None = None,
) -> dict[str, Any]:
    """Create or overwrite the toggle row (one row per feature key)."""
    fk = str(feature_key).strip()
    existing = get_main_table().get_item(key=toggle_key(fk)) or {}
    now = now_iso()
    item = {
        **toggle_key(fk),
        "entityType": "FeatureToggle",
        "featureKey": fk,
        "isEnabled": bool(is_enabled),
        "description": description if description is not None else existing.get("description"),
        "createdAt": str(existing.get("createdAt") or now),
        "updatedAt": now,
        "updatedBy": updated_by,
        "gsi1pk": _TOGGLE_INDEX_PK,
        "gsi1sk": fk,
    }
    get_main_table().put_item(item=item)
    return normalize_toggle_for_api(item) or {}


def list_toggles() -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_TOGGLE_INDEX_PK),
    )
    return [t for t in (normalize_toggle_for_api(it) for it in items) if t]
