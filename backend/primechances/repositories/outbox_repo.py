from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ..shared.timeutil import now_iso, to_iso, utcnow

EVENT_OPPORTUNITY_PUBLISHED = "opportunity.published"
EVENT_SUBMISSION_REVIEWED = "submission.reviewed"


def outbox_key(event_id: str) -> dict[str, str]:
    eid = str(event_id or "").strip()
    if not eid:
        raise ValueError("event_id is required")
    return {"pk": f"OUTBOX#{eid}", "sk": "PROFILE"}


def _public(item: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in item.items() if k not in ("pk", "sk")}


def enqueue_event(*, event_type: str, payload: dict[str, Any], dedupe_key: str | None = None) -> dict[str, Any]:
    """
    Enqueue an outbox event for async side effects (notification fan-out).

    When dedupe_key is provided it becomes the event id, so retries collapse.
    """
    et = str(event_type or "").strip()
    if not et:
        raise ValueError("event_type is required")
    eid = str(dedupe_key or "").strip() or ("evt_" + uuid.uuid4().hex[:18])

    now = now_iso()
    item: dict[str, Any] = {
        **outbox_key(eid),
        "entityType": "OutboxEvent",
        "eventId": eid,
        "eventType": et,
        "status": "pending",
        "attempts": 0,
        "maxAttempts": 8,
        "nextAttemptAt": now,
        "createdAt": now,
        "updatedAt": now,
        "payload": payload if isinstance(payload, dict) else {},
        # GSI1: pending queue
        "gsi1pk": "OUTBOX#PENDING",
        "gsi1sk": f"{now}#{eid}",
    }
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    except DdbConflict:
        existing = get_main_table().get_item(key=outbox_key(eid)) or {}
        return _public(existing)
    return _public(item)


def list_pending(*, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq("OUTBOX#PENDING"),
        scan_index_forward=True,
        limit=max(1, min(200, int(limit or 50))),
        next_token=next_token,
    )
    return {"items": pg.items or [], "nextToken": pg.next_token}


def get_event(event_id: str) -> dict[str, Any] | None:
    it = get_main_table().get_item(key=outbox_key(event_id))
    return _public(it) if it else None


def claim_event(*, event_id: str) -> dict[str, Any] | None:
    """
    Atomically move an event from pending -> processing.

    Raises DdbConflict when another worker claimed it first.
    """
    now = now_iso()
    return get_main_table().update_item(
        key=outbox_key(event_id),
        update_expression="SET #s = :s, lockedAt = :l, updatedAt = :u, gsi1pk = :gpk",
        expression_attribute_names={"#s": "status"},
        expression_attribute_values={
            ":s": "processing",
            ":l": now,
            ":u": now,
            ":gpk": "OUTBOX#PROCESSING",
            ":pending": "pending",
        },
        condition_expression="#s = :pending",
        return_values="ALL_NEW",
    )


def mark_done(*, event_id: str, result: dict[str, Any] | None = None) -> dict[str, Any] | None:
    now = now_iso()
    res = result if isinstance(result, dict) else {}
    return get_main_table().update_item(
        key=outbox_key(event_id),
        update_expression="SET #s = :s, updatedAt = :u, result = :r REMOVE gsi1pk, gsi1sk",
        expression_attribute_names={"#s": "status"},
        expression_attribute_values={":s": "done", ":u": now, ":r": res},
        return_values="ALL_NEW",
    )


def mark_retry(*, event_id: str, error: str) -> dict[str, Any] | None:
    """
    Put a processing event back to pending with exponential backoff, or fail it
    once maxAttempts is reached.
    """
    raw = get_main_table().get_item(key=outbox_key(event_id)) or {}
    attempts = int(raw.get("attempts") or 0) + 1
    max_attempts = int(raw.get("maxAttempts") or 8)
    now = now_iso()

    if attempts >= max_attempts:
        return get_main_table().update_item(
            key=outbox_key(event_id),
            update_expression="SET #s = :s, attempts = :a, lastError = :e, updatedAt = :u REMOVE gsi1pk, gsi1sk",
            expression_attribute_names={"#s": "status"},
            expression_attribute_values={":s": "failed", ":a": attempts, ":e": str(error or "")[:800], ":u": now},
            return_values="ALL_NEW",
        )

    # Capped at 5 minutes.
    delay_s = min(300, int(2 ** min(10, attempts)))
    next_at = to_iso(utcnow() + timedelta(seconds=delay_s))
    return get_main_table().update_item(
        key=outbox_key(event_id),
        update_expression=(
            "SET #s = :s, attempts = :a, lastError = :e, nextAttemptAt = :n, "
            "updatedAt = :u, gsi1pk = :gpk, gsi1sk = :gsk"
        ),
        expression_attribute_names={"#s": "status"},
        expression_attribute_values={
            ":s": "pending",
            ":a": attempts,
            ":e": str(error or "")[:800],
            ":n": next_at,
            ":u": now,
            ":gpk": "OUTBOX#PENDING",
            ":gsk": f"{now}#{event_id}",
        },
        return_values="ALL_NEW",
    )
