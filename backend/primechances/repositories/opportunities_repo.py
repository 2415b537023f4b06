from __future__ import annotations

import hashlib
import uuid
from decimal import Decimal
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import MAX_TRANSACT_ITEMS, get_main_table
from ..shared.timeutil import now_iso

OPPORTUNITY_STATUSES = ("pending", "approved", "rejected")
OPPORTUNITY_SOURCES = ("user_submitted", "scraped", "admin_created")
COUNTER_FIELDS = ("viewCount", "applicationCount", "shareCount")

_DEADLINE_PK = "OPPORTUNITY#DEADLINE"
_INTERNAL_KEYS = ("pk", "sk", "gsi1pk", "gsi1sk", "gsi2pk", "gsi2sk", "entityType", "opportunityId")


def new_opportunity_id() -> str:
    return str(uuid.uuid4())


def opportunity_key(opportunity_id: str) -> dict[str, str]:
    oid = str(opportunity_id or "").strip()
    if not oid:
        raise ValueError("opportunity_id is required")
    return {"pk": f"OPPORTUNITY#{oid}", "sk": "PROFILE"}


def status_index_pk(status: str) -> str:
    return f"OPPORTUNITY#STATUS#{status}"


def index_fields(*, opportunity_id: str, status: str, created_at: str, deadline: str | None) -> dict[str, Any]:
    """
    GSI attributes for an opportunity row.

    GSI1 partitions by moderation status (newest first by createdAt); GSI2 orders
    every row that has a deadline by that deadline.
    """
    out: dict[str, Any] = {
        "gsi1pk": status_index_pk(status),
        "gsi1sk": f"{created_at}#{opportunity_id}",
    }
    if deadline:
        out["gsi2pk"] = _DEADLINE_PK
        out["gsi2sk"] = f"{deadline}#{opportunity_id}"
    return out


def _plain(v: Any) -> Any:
    if isinstance(v, Decimal):
        return int(v) if v == v.to_integral_value() else float(v)
    if isinstance(v, list):
        return [_plain(x) for x in v]
    if isinstance(v, dict):
        return {k: _plain(x) for k, x in v.items()}
    return v


def normalize_opportunity_for_api(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = {k: _plain(v) for k, v in item.items() if k not in _INTERNAL_KEYS}
    out["_id"] = str(item.get("opportunityId") or "").strip() or None
    for k in COUNTER_FIELDS:
        out[k] = int(out.get(k) or 0)
    out["isPublished"] = bool(out.get("isPublished"))
    return out


def build_opportunity_item(*, opportunity_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    created_at = str(fields.get("createdAt") or now_iso())
    item: dict[str, Any] = {
        **opportunity_key(opportunity_id),
        "entityType": "Opportunity",
        "opportunityId": opportunity_id,
        **fields,
        "createdAt": created_at,
        "updatedAt": str(fields.get("updatedAt") or created_at),
        **index_fields(
            opportunity_id=opportunity_id,
            status=str(fields.get("status") or "pending"),
            created_at=created_at,
            deadline=fields.get("applicationDeadline"),
        ),
    }
    for k in COUNTER_FIELDS:
        item.setdefault(k, 0)
    return item


def get_opportunity_item(opportunity_id: str) -> dict[str, Any] | None:
    return get_main_table().get_item(key=opportunity_key(opportunity_id), consistent_read=True)


def get_opportunity(opportunity_id: str) -> dict[str, Any] | None:
    return normalize_opportunity_for_api(get_opportunity_item(opportunity_id))


def put_new_opportunity(item: dict[str, Any]) -> dict[str, Any]:
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return item


def update_opportunity_fields(
    opportunity_id: str,
    *,
    sets: dict[str, Any],
    removes: list[str] | None = None,
    expected_status: str | None = None,
    expected: dict[str, Any] | None = None,
    expected_not: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """
    Partial SET/REMOVE on an existing opportunity row.

    With `expected_status` (and any `expected` attribute values) the write only
    lands if the row still holds those values; `expected_not` values must be
    absent or different. DdbConflict otherwise.
    """
    key = opportunity_key(opportunity_id)
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    set_parts: list[str] = []

    for i, (k, v) in enumerate(sets.items(), start=1):
        names[f"#k{i}"] = k
        values[f":v{i}"] = v
        set_parts.append(f"#k{i} = :v{i}")

    remove_parts: list[str] = []
    for j, k in enumerate(removes or [], start=1):
        names[f"#r{j}"] = k
        remove_parts.append(f"#r{j}")

    expr = "SET " + ", ".join(set_parts)
    if remove_parts:
        expr += " REMOVE " + ", ".join(remove_parts)

    condition = "attribute_exists(pk)"
    if expected_status:
        names["#st"] = "status"
        values[":expected"] = expected_status
        condition += " AND #st = :expected"
    for n, (k, v) in enumerate((expected or {}).items(), start=1):
        names[f"#c{n}"] = k
        values[f":c{n}"] = v
        condition += f" AND #c{n} = :c{n}"
    for n, (k, v) in enumerate((expected_not or {}).items(), start=1):
        names[f"#x{n}"] = k
        values[f":x{n}"] = v
        condition += f" AND #x{n} <> :x{n}"

    updated = get_main_table().update_item(
        key=key,
        update_expression=expr,
        expression_attribute_names=names,
        expression_attribute_values=values,
        condition_expression=condition,
        return_values="ALL_NEW",
    )
    return normalize_opportunity_for_api(updated)


def increment_counter(opportunity_id: str, field: str, *, by: int = 1) -> dict[str, Any] | None:
    if field not in COUNTER_FIELDS:
        raise ValueError(f"unknown counter: {field}")
    if int(by) < 1:
        raise ValueError("counters only move forward")
    updated = get_main_table().increment(key=opportunity_key(opportunity_id), field=field, by=int(by))
    return normalize_opportunity_for_api(updated)


def list_by_status(status: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(status_index_pk(status)),
        scan_index_forward=False,
        limit=max(1, min(200, int(limit or 50))),
        next_token=next_token,
    )
    data = [o for o in (normalize_opportunity_for_api(it) for it in pg.items or []) if o]
    return {"data": data, "nextToken": pg.next_token}


def list_all_by_status(status: str) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(status_index_pk(status)),
        scan_index_forward=False,
    )
    return [o for o in (normalize_opportunity_for_api(it) for it in items) if o]


def list_deadlines_before(cutoff_iso: str) -> list[dict[str, Any]]:
    """Rows whose applicationDeadline is strictly before cutoff, oldest first."""
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq(_DEADLINE_PK) & Key("gsi2sk").lt(cutoff_iso),
        scan_index_forward=True,
    )
    return [o for o in (normalize_opportunity_for_api(it) for it in items) if o]


def list_deadlines_between(start_iso: str, end_iso: str) -> list[dict[str, Any]]:
    """Rows whose applicationDeadline falls in [start, end], soonest first."""
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq(_DEADLINE_PK)
        & Key("gsi2sk").between(start_iso, f"{end_iso}#~"),
        scan_index_forward=True,
    )
    return [o for o in (normalize_opportunity_for_api(it) for it in items) if o]


def list_partition_keys(opportunity_id: str) -> list[dict[str, str]]:
    """Every (pk, sk) stored under the opportunity: profile + engagement rows."""
    key = opportunity_key(opportunity_id)
    items = get_main_table().query_all(
        key_condition_expression=Key("pk").eq(key["pk"]),
        scan_index_forward=True,
    )
    return [{"pk": str(it["pk"]), "sk": str(it["sk"])} for it in items]


def delete_keys_in_chunks(keys: list[dict[str, str]]) -> int:
    """
    Delete rows with one transaction per chunk; each chunk is all-or-nothing.
    """
    t = get_main_table()
    deleted = 0
    for i in range(0, len(keys), MAX_TRANSACT_ITEMS):
        chunk = keys[i : i + MAX_TRANSACT_ITEMS]
        t.transact_write(deletes=[t.tx_delete(key=k) for k in chunk])
        deleted += len(chunk)
    return deleted


def delete_opportunity_row(opportunity_id: str, *, extra_keys: list[dict[str, str]] | None = None) -> None:
    t = get_main_table()
    deletes = [t.tx_delete(key=opportunity_key(opportunity_id), condition_expression="attribute_exists(pk)")]
    deletes.extend(t.tx_delete(key=k) for k in (extra_keys or []))
    t.transact_write(deletes=deletes)


# --- scraped source URL dedupe ---


def normalize_source_url(url: str | None) -> str:
    raw = str(url or "").strip()
    if not raw:
        return ""
    parts = urlsplit(raw)
    path = parts.path.rstrip("/") or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def source_url_sha(url: str | None) -> str | None:
    norm = normalize_source_url(url)
    if not norm:
        return None
    return hashlib.sha256(norm.encode("utf-8", errors="ignore")).hexdigest()


def scraped_map_key(sha: str) -> dict[str, str]:
    h = str(sha or "").strip().lower()
    if not h:
        raise ValueError("sha is required")
    return {"pk": f"SCRAPEDURL#{h}", "sk": "MAP"}


def get_scraped_mapping(sha: str) -> dict[str, Any] | None:
    return get_main_table().get_item(key=scraped_map_key(sha))


def put_opportunity_with_mapping(item: dict[str, Any], *, sha: str) -> dict[str, Any]:
    """
    Create the opportunity and its source URL mapping in one transaction.

    Raises DdbConflict when the URL was already ingested.
    """
    t = get_main_table()
    now = now_iso()
    mapping = {
        **scraped_map_key(sha),
        "entityType": "ScrapedUrlMap",
        "sourceUrlSha": sha,
        "opportunityId": item["opportunityId"],
        "createdAt": now,
    }
    t.transact_write(
        puts=[
            t.tx_put(item=mapping, condition_expression="attribute_not_exists(pk)"),
            t.tx_put(item=item, condition_expression="attribute_not_exists(pk)"),
        ]
    )
    return item
