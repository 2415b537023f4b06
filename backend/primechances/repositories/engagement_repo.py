from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ..shared.timeutil import now_iso
from .opportunities_repo import opportunity_key

APPLICATION_STATUSES = ("applied", "interviewing", "offered", "rejected", "withdrawn")


def bookmark_key(opportunity_id: str, user_id: str) -> dict[str, str]:
    return {"pk": opportunity_key(opportunity_id)["pk"], "sk": f"BOOKMARK#{_uid(user_id)}"}


def application_key(opportunity_id: str, user_id: str) -> dict[str, str]:
    return {"pk": opportunity_key(opportunity_id)["pk"], "sk": f"APPLICATION#{_uid(user_id)}"}


def _uid(user_id: str) -> str:
    uid = str(user_id or "").strip()
    if not uid:
        raise ValueError("user_id is required")
    return uid


def _user_list_pk(user_id: str, kind: str) -> str:
    return f"USER#{_uid(user_id)}#{kind}"


def normalize_engagement(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = {
        k: v
        for k, v in item.items()
        if k not in ("pk", "sk", "gsi1pk", "gsi1sk", "entityType")
    }
    out["_id"] = f"{item.get('opportunityId')}:{item.get('userId')}"
    return out


# --- bookmarks ---


def get_bookmark(opportunity_id: str, user_id: str) -> dict[str, Any] | None:
    it = get_main_table().get_item(key=bookmark_key(opportunity_id, user_id), consistent_read=True)
    return normalize_engagement(it)


def put_bookmark(opportunity_id: str, user_id: str) -> dict[str, Any]:
    """
    Insert the bookmark only while the opportunity row still exists.

    Raises DdbConflict; item 0 failing means the pair already exists, item 1
    means the opportunity is gone. Neither case writes anything.
    """
    t = get_main_table()
    now = now_iso()
    item = {
        **bookmark_key(opportunity_id, user_id),
        "entityType": "Bookmark",
        "opportunityId": opportunity_id,
        "userId": user_id,
        "createdAt": now,
        "gsi1pk": _user_list_pk(user_id, "BOOKMARKS"),
        "gsi1sk": f"{now}#{opportunity_id}",
    }
    t.transact_write(
        puts=[t.tx_put(item=item, condition_expression="attribute_not_exists(pk)")],
        checks=[t.tx_condition_check(key=opportunity_key(opportunity_id), condition_expression="attribute_exists(pk)")],
    )
    return normalize_engagement(item) or {}


def delete_bookmark(opportunity_id: str, user_id: str) -> None:
    """Raises DdbConflict if there was nothing to delete."""
    get_main_table().delete_item(
        key=bookmark_key(opportunity_id, user_id),
        condition_expression="attribute_exists(pk)",
    )


def list_bookmark_rows(opportunity_id: str) -> list[dict[str, Any]]:
    pk = opportunity_key(opportunity_id)["pk"]
    items = get_main_table().query_all(
        key_condition_expression=Key("pk").eq(pk) & Key("sk").begins_with("BOOKMARK#"),
    )
    return [x for x in (normalize_engagement(it) for it in items) if x]


def list_bookmarking_user_ids(opportunity_id: str) -> list[str]:
    seen: list[str] = []
    for row in list_bookmark_rows(opportunity_id):
        uid = str(row.get("userId") or "").strip()
        if uid and uid not in seen:
            seen.append(uid)
    return seen


def count_bookmarks(opportunity_id: str) -> int:
    return len(list_bookmark_rows(opportunity_id))


def list_user_bookmarks(user_id: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_user_list_pk(user_id, "BOOKMARKS")),
        scan_index_forward=False,
        limit=limit,
        next_token=next_token,
    )
    data = [x for x in (normalize_engagement(it) for it in pg.items or []) if x]
    return {"data": data, "nextToken": pg.next_token}


# --- applications ---


def get_application(opportunity_id: str, user_id: str) -> dict[str, Any] | None:
    it = get_main_table().get_item(key=application_key(opportunity_id, user_id), consistent_read=True)
    return normalize_engagement(it)


def create_application_with_count(opportunity_id: str, user_id: str) -> dict[str, Any]:
    """
    Insert the application row and bump `applicationCount` in one transaction.

    Raises DdbConflict if the user already applied (or the opportunity is gone);
    in that case neither write is applied.
    """
    t = get_main_table()
    now = now_iso()
    item = {
        **application_key(opportunity_id, user_id),
        "entityType": "Application",
        "opportunityId": opportunity_id,
        "userId": user_id,
        "applicationStatus": "applied",
        "appliedAt": now,
        "createdAt": now,
        "gsi1pk": _user_list_pk(user_id, "APPLICATIONS"),
        "gsi1sk": f"{now}#{opportunity_id}",
    }
    t.transact_write(
        puts=[t.tx_put(item=item, condition_expression="attribute_not_exists(pk)")],
        updates=[
            t.tx_update(
                key=opportunity_key(opportunity_id),
                update_expression="SET updatedAt = :u ADD #f :by",
                expression_attribute_names={"#f": "applicationCount"},
                expression_attribute_values={":by": 1, ":u": now},
                condition_expression="attribute_exists(pk)",
            )
        ],
    )
    return normalize_engagement(item) or {}


def list_user_applications(
    user_id: str, *, limit: int = 50, next_token: str | None = None
) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(_user_list_pk(user_id, "APPLICATIONS")),
        scan_index_forward=False,
        limit=limit,
        next_token=next_token,
    )
    data = [x for x in (normalize_engagement(it) for it in pg.items or []) if x]
    return {"data": data, "nextToken": pg.next_token}
