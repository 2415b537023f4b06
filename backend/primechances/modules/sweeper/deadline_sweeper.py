from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Callable

from ...db.dynamodb.errors import DdbConflict, DdbError
from ...errors import LifecycleError
from ...observability.logging import get_logger
from ...repositories import activity_log_repo, engagement_repo, opportunities_repo
from ...settings import LifecycleConfig
from ...shared.timeutil import parse_iso, to_iso, utcnow
from ..notifications.dispatcher import NotificationDispatcher
from ..opportunities.opportunity_store import OpportunityStore
from ..toggles import feature_toggles

log = get_logger("deadline_sweeper")

_DAY = timedelta(days=1)


def days_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier) / _DAY


class DeadlineSweeper:
    """
    Scheduled maintenance run, gated by the `auto_delete_expired_opportunities`
    toggle:

    1. expire unpublished scraped rows whose deadline passed
    2. delete published rows whose deadline passed more than the grace period ago
    3. send deadline reminders to users who bookmarked listings closing soon

    `run()` never raises; failures come back as `success: False`.
    """

    def __init__(
        self,
        config: LifecycleConfig | None = None,
        *,
        store: OpportunityStore | None = None,
        dispatcher: NotificationDispatcher | None = None,
        toggle_reader: Callable[[str], bool] = feature_toggles.is_enabled,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.config = config or LifecycleConfig()
        self._now = now_fn
        self.store = store or OpportunityStore(self.config, now_fn=now_fn)
        self.dispatcher = dispatcher or NotificationDispatcher(self.config)
        self._toggle_enabled = toggle_reader

    # --- run ---

    def run(self) -> dict[str, Any]:
        now = self._now()
        report: dict[str, Any] = {
            "success": True,
            "deleted_count": 0,
            "deleted_opportunities": [],
            "expired_count": 0,
            "upcoming_deadlines": 0,
            "notifications_sent": 0,
        }

        if not self._toggle_enabled(feature_toggles.AUTO_DELETE_EXPIRED_OPPORTUNITIES):
            log.info("sweeper_disabled", feature_key=feature_toggles.AUTO_DELETE_EXPIRED_OPPORTUNITIES)
            report["message"] = "Auto-deletion is disabled"
            return report

        log.info("sweeper_started", now=to_iso(now), policy=self.config.deadline_reminder_policy)
        try:
            report["expired_count"] = self.expire_scraped(now)
        except Exception as e:
            log.exception("sweeper_expire_failed", error=str(e))
            return {**report, "success": False, "error": str(e)}

        try:
            deleted = self.delete_expired_published(now)
            report["deleted_opportunities"] = deleted
            report["deleted_count"] = len(deleted)

            upcoming, sent = self.send_deadline_alerts(now)
            report["upcoming_deadlines"] = upcoming
            report["notifications_sent"] = sent
        except Exception as e:
            log.exception("sweeper_failed", error=str(e))
            return {**report, "success": False, "error": str(e)}

        report["message"] = f"Successfully deleted {report['deleted_count']} expired opportunities"
        log.info(
            "sweeper_finished",
            deleted_count=report["deleted_count"],
            expired_count=report["expired_count"],
            upcoming_deadlines=report["upcoming_deadlines"],
            notifications_sent=report["notifications_sent"],
        )
        return report

    # --- step 1: expiry ---

    def expire_scraped(self, now: datetime) -> int:
        """Mark unpublished scraped rows past their deadline as expired (never deletes)."""
        stamp = to_iso(now)
        expired = 0
        for opp in opportunities_repo.list_deadlines_before(stamp):
            if opp.get("source") != "scraped" or opp.get("isPublished") or opp.get("isExpired"):
                continue
            try:
                opportunities_repo.update_opportunity_fields(
                    str(opp["_id"]),
                    sets={"isExpired": True, "expiredAt": stamp, "updatedAt": stamp},
                    expected_status=str(opp.get("status") or "pending"),
                    expected={"isPublished": False},
                )
            except DdbConflict:
                # Published or moderated since the read; leave it alone.
                log.info("sweeper_expire_skipped", opportunity_id=opp.get("_id"))
                continue
            expired += 1
        return expired

    # --- step 2: retention ---

    def delete_expired_published(self, now: datetime) -> list[dict[str, Any]]:
        cutoff = now - timedelta(days=int(self.config.retention_grace_days))
        stamp = to_iso(now)
        deleted: list[dict[str, Any]] = []

        for opp in opportunities_repo.list_deadlines_before(to_iso(cutoff)):
            if opp.get("status") != "approved" or not opp.get("isPublished"):
                continue
            oid = str(opp["_id"])
            deadline = parse_iso(opp.get("applicationDeadline"))
            days_expired = math.floor(days_between(now, deadline)) if deadline else 0
            entry = {
                "opportunity_id": oid,
                "title": opp.get("title"),
                "organization": opp.get("organization"),
                "application_deadline": opp.get("applicationDeadline"),
                "days_expired": days_expired,
                "deletion_reason": f"Application deadline expired {days_expired} days ago",
                "deleted_at": stamp,
            }
            try:
                self.store.delete(oid, actor_id=activity_log_repo.SYSTEM_ADMIN_ID)
            except (LifecycleError, DdbError) as e:
                log.error("sweeper_delete_failed", opportunity_id=oid, error=str(e))
                continue

            self._log_activity(
                action=activity_log_repo.OPPORTUNITY_AUTO_DELETED,
                target_type="opportunity",
                target_id=oid,
                details={
                    **{k: v for k, v in entry.items() if k not in ("opportunity_id", "deleted_at")},
                    "auto_deleted": True,
                },
            )
            deleted.append(entry)
            log.info("sweeper_deleted", opportunity_id=oid, days_expired=days_expired)

        if deleted:
            self._log_activity(
                action=activity_log_repo.BATCH_AUTO_DELETION_COMPLETED,
                target_type="opportunities",
                target_id=None,
                details={
                    "deleted_count": len(deleted),
                    "deleted_opportunity_ids": [d["opportunity_id"] for d in deleted],
                    "execution_time": stamp,
                    "auto_deleted": True,
                },
            )
        return deleted

    def _log_activity(self, *, action: str, target_type: str, target_id: str | None, details: dict[str, Any]) -> None:
        try:
            activity_log_repo.log_activity(
                admin_id=activity_log_repo.SYSTEM_ADMIN_ID,
                action=action,
                target_type=target_type,
                target_id=target_id,
                details=details,
                created_at=to_iso(self._now()),
            )
        except Exception as e:
            log.warning("activity_log_failed", action=action, target_id=target_id, error=str(e))

    # --- step 3: reminders ---

    def _upcoming(self, now: datetime) -> list[dict[str, Any]]:
        end = now + timedelta(days=int(self.config.deadline_window_days))
        rows = opportunities_repo.list_deadlines_between(to_iso(now), to_iso(end))
        return [
            o
            for o in rows
            if o.get("status") == "approved" and o.get("isPublished") and not o.get("isExpired")
        ]

    def _dedupe_key(self, opp: dict[str, Any], now: datetime) -> str | None:
        policy = self.config.deadline_reminder_policy
        oid = opp.get("_id")
        if policy == "daily":
            return f"deadline#{oid}#{now.date().isoformat()}"
        if policy == "once":
            return f"deadline#{oid}#{opp.get('applicationDeadline')}"
        # every_sweep: a fresh reminder on each run
        return None

    def send_deadline_alerts(self, now: datetime) -> tuple[int, int]:
        """Returns (opportunities in the window, notifications sent)."""
        upcoming = self._upcoming(now)
        sent = 0
        seen: set[tuple[str, str]] = set()
        for opp in upcoming:
            oid = str(opp["_id"])
            deadline = parse_iso(opp.get("applicationDeadline"))
            if deadline is None:
                continue
            days_until = max(0, math.ceil(days_between(deadline, now)))
            dedupe_key = self._dedupe_key(opp, now)
            for uid in engagement_repo.list_bookmarking_user_ids(oid):
                if (uid, oid) in seen:
                    continue
                seen.add((uid, oid))
                try:
                    n = self.dispatcher.notify_deadline(
                        user_id=uid,
                        opportunity=opp,
                        days_until=days_until,
                        dedupe_key=dedupe_key,
                    )
                except Exception as e:
                    log.warning("deadline_notification_failed", opportunity_id=oid, user_id=uid, error=str(e))
                    continue
                if n is not None:
                    sent += 1
        return len(upcoming), sent

    # --- previews / reporting ---

    def preview_expired(self) -> list[dict[str, Any]]:
        now = self._now()
        out = []
        for opp in opportunities_repo.list_deadlines_before(to_iso(now)):
            if opp.get("status") != "approved" or not opp.get("isPublished"):
                continue
            deadline = parse_iso(opp.get("applicationDeadline"))
            out.append(
                {
                    "id": opp.get("_id"),
                    "title": opp.get("title"),
                    "organization": opp.get("organization"),
                    "application_deadline": opp.get("applicationDeadline"),
                    "days_expired": math.floor(days_between(now, deadline)) if deadline else 0,
                }
            )
        return out

    def preview_upcoming(self) -> list[dict[str, Any]]:
        now = self._now()
        out = []
        for opp in self._upcoming(now):
            deadline = parse_iso(opp.get("applicationDeadline"))
            out.append(
                {
                    "id": opp.get("_id"),
                    "title": opp.get("title"),
                    "organization": opp.get("organization"),
                    "application_deadline": opp.get("applicationDeadline"),
                    "days_until_expiry": math.ceil(days_between(deadline, now)) if deadline else 0,
                }
            )
        return out

    def stats(self, days_back: int = 30) -> dict[str, Any]:
        now = self._now()
        since = now - timedelta(days=max(1, int(days_back)))
        rows = activity_log_repo.list_activity_since(
            to_iso(since), action=activity_log_repo.OPPORTUNITY_AUTO_DELETED
        )
        today = to_iso(now.replace(hour=0, minute=0, second=0))
        week = to_iso(now - timedelta(days=7))
        month = to_iso(now - timedelta(days=30))
        expired_days = [int((r.get("details") or {}).get("days_expired") or 0) for r in rows]
        return {
            "total_deleted": len(rows),
            "deleted_today": sum(1 for r in rows if str(r.get("createdAt")) >= today),
            "deleted_this_week": sum(1 for r in rows if str(r.get("createdAt")) >= week),
            "deleted_this_month": sum(1 for r in rows if str(r.get("createdAt")) >= month),
            "avg_days_expired": round(sum(expired_days) / len(expired_days), 1) if expired_days else 0,
        }

    def logs(self, *, page: int = 1, page_size: int = 20, search: str | None = None) -> dict[str, Any]:
        rows = activity_log_repo.list_activity_since(None, action=activity_log_repo.OPPORTUNITY_AUTO_DELETED)
        term = str(search or "").strip().lower()
        if term:
            rows = [
                r
                for r in rows
                if term in str((r.get("details") or {}).get("title") or "").lower()
                or term in str((r.get("details") or {}).get("organization") or "").lower()
            ]
        page = max(1, int(page))
        page_size = max(1, min(100, int(page_size)))
        start = (page - 1) * page_size
        logs = []
        for r in rows[start : start + page_size]:
            d = r.get("details") or {}
            logs.append(
                {
                    "id": r.get("_id"),
                    "opportunity_id": r.get("targetId"),
                    "title": d.get("title") or "Unknown",
                    "organization": d.get("organization") or "Unknown",
                    "application_deadline": d.get("application_deadline"),
                    "days_expired": int(d.get("days_expired") or 0),
                    "deletion_reason": d.get("deletion_reason") or "Application deadline expired",
                    "deleted_at": r.get("createdAt"),
                }
            )
        return {"logs": logs, "total": len(rows), "page": page, "pageSize": page_size}
