from __future__ import annotations

import uuid
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ..shared.timeutil import now_iso

NOTIFICATION_TYPES = ("opportunity", "deadline", "approval", "system")


def _uid(user_id: str) -> str:
    uid = str(user_id or "").strip()
    if not uid:
        raise ValueError("user_id is required")
    return uid


def notification_key(*, user_id: str, notification_id: str) -> dict[str, str]:
    nid = str(notification_id or "").strip()
    if not nid:
        raise ValueError("notification_id is required")
    return {"pk": f"USER#{_uid(user_id)}", "sk": f"NOTIFICATION#{nid}"}


def reminder_key(*, user_id: str, dedupe_key: str) -> dict[str, str]:
    return {"pk": f"USER#{_uid(user_id)}", "sk": f"REMINDER#{dedupe_key}"}


def normalize_notification_for_api(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = {k: v for k, v in item.items() if k not in ("pk", "sk", "entityType")}
    out["_id"] = str(item.get("notificationId") or "").strip() or None
    out["isRead"] = bool(item.get("isRead"))
    out["push"] = bool(item.get("push"))
    return out


def put_notification(
    *,
    user_id: str,
    type: str,
    title: str,
    message: str,
    opportunity_id: str | None = None,
    push: bool = False,
) -> dict[str, Any]:
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"unknown notification type: {type}")
    now = now_iso()
    # Time-prefixed id keeps the partition ordered newest-last.
    nid = f"{now.replace('-', '').replace(':', '')}-{uuid.uuid4().hex[:12]}"
    item = {
        **notification_key(user_id=user_id, notification_id=nid),
        "entityType": "Notification",
        "notificationId": nid,
        "userId": _uid(user_id),
        "type": type,
        "title": title,
        "message": message,
        "opportunityId": opportunity_id,
        "isRead": False,
        "push": bool(push),
        "createdAt": now,
    }
    get_main_table().put_item(item=item)
    return normalize_notification_for_api(item) or {}


def list_notifications(*, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        key_condition_expression=Key("pk").eq(f"USER#{_uid(user_id)}") & Key("sk").begins_with("NOTIFICATION#"),
        scan_index_forward=False,
        max_items=max(1, int(limit or 50)),
    )
    return [n for n in (normalize_notification_for_api(it) for it in items) if n]


def mark_read(*, user_id: str, notification_id: str) -> dict[str, Any] | None:
    """Raises DdbConflict when the notification does not exist."""
    updated = get_main_table().update_item(
        key=notification_key(user_id=user_id, notification_id=notification_id),
        update_expression="SET isRead = :r, readAt = :t",
        expression_attribute_names=None,
        expression_attribute_values={":r": True, ":t": now_iso()},
        condition_expression="attribute_exists(pk)",
        return_values="ALL_NEW",
    )
    return normalize_notification_for_api(updated)


def claim_reminder(*, user_id: str, dedupe_key: str, ttl_marker: str | None = None) -> bool:
    """
    Record that a reminder with this key was sent. Returns False if it already was.
    """
    item = {
        **reminder_key(user_id=user_id, dedupe_key=dedupe_key),
        "entityType": "ReminderMarker",
        "userId": _uid(user_id),
        "dedupeKey": dedupe_key,
        "createdAt": ttl_marker or now_iso(),
    }
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    except DdbConflict:
        return False
    return True


def release_reminder(*, user_id: str, dedupe_key: str) -> None:
    get_main_table().delete_item(key=reminder_key(user_id=user_id, dedupe_key=dedupe_key))


def list_unread_notifications(*, user_id: str, page_size: int = 200) -> list[dict[str, Any]]:
    """Every unread notification for the user, following pages to the end."""
    t = get_main_table()
    out: list[dict[str, Any]] = []
    token: str | None = None
    while True:
        pg = t.query_page(
            key_condition_expression=Key("pk").eq(f"USER#{_uid(user_id)}") & Key("sk").begins_with("NOTIFICATION#"),
            scan_index_forward=False,
            limit=page_size,
            next_token=token,
        )
        for it in pg.items or []:
            n = normalize_notification_for_api(it)
            if n and not n["isRead"]:
                out.append(n)
        token = pg.next_token
        if not token:
            return out
