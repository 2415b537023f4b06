from __future__ import annotations

from typing import Any

from ..db.dynamodb.errors import DdbConflict
from ..modules.notifications.dispatcher import NotificationDispatcher
from ..observability.logging import configure_logging, get_logger
from ..repositories import opportunities_repo
from ..repositories.outbox_repo import (
    EVENT_OPPORTUNITY_PUBLISHED,
    EVENT_SUBMISSION_REVIEWED,
    claim_event,
    list_pending,
    mark_done,
    mark_retry,
)
from ..settings import get_lifecycle_config
from ..shared.timeutil import now_iso

log = get_logger("outbox_worker")


def dispatch_event(event: dict[str, Any], *, dispatcher: NotificationDispatcher | None = None) -> dict[str, Any]:
    """Dispatch a single outbox event."""
    et = str(event.get("eventType") or "").strip()
    payload_raw = event.get("payload")
    payload: dict[str, Any] = payload_raw if isinstance(payload_raw, dict) else {}
    d = dispatcher or NotificationDispatcher(get_lifecycle_config())

    if et in (EVENT_OPPORTUNITY_PUBLISHED, EVENT_SUBMISSION_REVIEWED):
        oid = str(payload.get("opportunityId") or "").strip()
        opp = opportunities_repo.get_opportunity(oid) if oid else None
        if not opp:
            # Deleted since the event was written; nothing to tell anyone.
            return {"ok": True, "skipped": "opportunity_missing"}

        if et == EVENT_OPPORTUNITY_PUBLISHED:
            if not opp.get("isPublished"):
                return {"ok": True, "skipped": "not_published"}
            res = d.on_opportunity_published(opp)
            if res.get("failed"):
                # Retried later; recipients already notified are skipped.
                return {"ok": False, "error": "partial_fanout", **res}
            return {"ok": True, **res}

        decision = str(payload.get("decision") or opp.get("status") or "").strip()
        n = d.on_submission_reviewed(opp, decision)
        return {"ok": True, "notified": 1 if n else 0}

    return {"ok": False, "error": "unknown_event_type", "eventType": et}


def run_once(*, limit: int = 30, dispatcher: NotificationDispatcher | None = None) -> dict[str, Any]:
    """
    Best-effort outbox dispatcher. Safe to run from cron/ECS scheduled task.
    """
    lim = max(1, min(100, int(limit or 30)))
    scanned = 0
    processed = 0
    failed = 0
    now = now_iso()

    pg = list_pending(limit=lim, next_token=None)
    for it in pg.get("items") or []:
        scanned += 1
        if not isinstance(it, dict):
            continue
        eid = str(it.get("eventId") or "").strip()
        if not eid or str(it.get("nextAttemptAt") or "") > now:
            continue
        try:
            claimed = claim_event(event_id=eid)
        except DdbConflict:
            claimed = None
        if not claimed:
            continue
        try:
            res = dispatch_event(claimed, dispatcher=dispatcher)
            if res.get("ok"):
                processed += 1
                mark_done(event_id=eid, result=res)
            else:
                failed += 1
                mark_retry(event_id=eid, error=str(res.get("error") or "dispatch_failed"))
        except Exception as e:
            failed += 1
            log.warning("outbox_dispatch_failed", event_id=eid, error=str(e))
            mark_retry(event_id=eid, error=str(e) or "dispatch_failed")

    out = {"ok": True, "scanned": scanned, "processed": processed, "failed": failed}
    log.info("outbox_run_once_done", **out)
    return out


if __name__ == "__main__":
    configure_logging(level="INFO")
    run_once(limit=30)
