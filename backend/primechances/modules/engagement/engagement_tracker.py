from __future__ import annotations

from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...errors import InvalidStateError, NotFoundError, UniqueConstraintError
from ...observability.logging import get_logger
from ...repositories import engagement_repo, opportunities_repo
from ...settings import LifecycleConfig

log = get_logger("engagement_tracker")


def conversion_rate(*, applications: int, views: int) -> float:
    if views <= 0:
        return 0.0
    return round(applications / views * 100, 2)


class EngagementTracker:
    """Bookmarks, applications, view/share counters and per-listing analytics."""

    def __init__(self, config: LifecycleConfig | None = None):
        self.config = config or LifecycleConfig()

    def _require_opportunity(self, opportunity_id: str) -> dict[str, Any]:
        opp = opportunities_repo.get_opportunity(opportunity_id)
        if not opp:
            raise NotFoundError(message="Opportunity not found", opportunity_id=opportunity_id)
        return opp

    def _require_engageable(self, opportunity_id: str) -> dict[str, Any]:
        opp = self._require_opportunity(opportunity_id)
        if not opp.get("isPublished") or opp.get("isExpired"):
            raise InvalidStateError(
                message="Opportunity is not open for engagement",
                opportunity_id=opportunity_id,
                current_status=str(opp.get("status")),
                attempted="engage",
            )
        return opp

    # --- bookmarks ---

    def _insert_bookmark(self, opportunity_id: str, user_id: str) -> None:
        try:
            engagement_repo.put_bookmark(opportunity_id, user_id)
        except DdbConflict as e:
            if e.condition_failed_at(1):
                raise NotFoundError(message="Opportunity not found", opportunity_id=opportunity_id) from e
            raise UniqueConstraintError(
                message="Bookmark already exists",
                opportunity_id=opportunity_id,
            ) from e

    def toggle_bookmark(self, *, user_id: str, opportunity_id: str, desired: bool | None = None) -> dict[str, Any]:
        """
        Flip (or force, with `desired`) the bookmark for this user.

        Returns {"bookmarked", "changed", "action"}; a racing duplicate insert or
        delete is reported as the same outcome with changed=False.
        """
        exists = engagement_repo.get_bookmark(opportunity_id, user_id) is not None
        want = (not exists) if desired is None else bool(desired)

        if want == exists:
            return {"bookmarked": exists, "changed": False, "action": "created" if exists else "removed"}

        if want:
            self._require_engageable(opportunity_id)
            try:
                self._insert_bookmark(opportunity_id, user_id)
            except UniqueConstraintError:
                log.info("bookmark_insert_raced", opportunity_id=opportunity_id, user_id=user_id)
                return {"bookmarked": True, "changed": False, "action": "created"}
            log.info("bookmark_created", opportunity_id=opportunity_id, user_id=user_id)
            return {"bookmarked": True, "changed": True, "action": "created"}

        try:
            engagement_repo.delete_bookmark(opportunity_id, user_id)
        except DdbConflict:
            log.info("bookmark_delete_raced", opportunity_id=opportunity_id, user_id=user_id)
            return {"bookmarked": False, "changed": False, "action": "removed"}
        log.info("bookmark_removed", opportunity_id=opportunity_id, user_id=user_id)
        return {"bookmarked": False, "changed": True, "action": "removed"}

    def list_bookmarks(self, *, user_id: str, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
        page = engagement_repo.list_user_bookmarks(user_id, limit=limit, next_token=next_token)
        page["data"] = self._attach_opportunities(page["data"])
        return page

    # --- applications ---

    def record_application(self, *, user_id: str, opportunity_id: str) -> dict[str, Any]:
        """
        Record that the user applied and return the URL to open.

        The application row and the `applicationCount` bump share one store
        transaction; repeats neither error nor count twice.
        """
        opp = self._require_engageable(opportunity_id)
        created = False
        if engagement_repo.get_application(opportunity_id, user_id) is None:
            try:
                engagement_repo.create_application_with_count(opportunity_id, user_id)
                created = True
            except DdbConflict as e:
                # Item 1 is the counter bump: the listing was deleted under us.
                if e.condition_failed_at(1):
                    raise NotFoundError(message="Opportunity not found", opportunity_id=opportunity_id) from e
                if engagement_repo.get_application(opportunity_id, user_id) is None:
                    raise
                log.info("application_insert_raced", opportunity_id=opportunity_id, user_id=user_id)
        if created:
            log.info("application_recorded", opportunity_id=opportunity_id, user_id=user_id)
        return {
            "recorded": created,
            "alreadyApplied": not created,
            "applicationUrl": opp.get("applicationUrl"),
        }

    def list_applications(self, *, user_id: str, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
        page = engagement_repo.list_user_applications(user_id, limit=limit, next_token=next_token)
        page["data"] = self._attach_opportunities(page["data"])
        return page

    # --- counters ---

    def _bump(self, opportunity_id: str, field: str) -> int:
        try:
            updated = opportunities_repo.increment_counter(opportunity_id, field)
        except DdbConflict as e:
            raise NotFoundError(message="Opportunity not found", opportunity_id=opportunity_id) from e
        return int((updated or {}).get(field) or 0)

    def record_view(self, opportunity_id: str) -> dict[str, Any]:
        """Every call counts; views are not de-duplicated per viewer."""
        return {"viewCount": self._bump(opportunity_id, "viewCount")}

    def record_share(self, opportunity_id: str) -> dict[str, Any]:
        return {"shareCount": self._bump(opportunity_id, "shareCount")}

    # --- reads ---

    def engagement_status(self, *, user_id: str, opportunity_id: str) -> dict[str, Any]:
        return {
            "opportunityId": opportunity_id,
            "bookmarked": engagement_repo.get_bookmark(opportunity_id, user_id) is not None,
            "applied": engagement_repo.get_application(opportunity_id, user_id) is not None,
        }

    def analytics(self, *, limit: int = 50) -> list[dict[str, Any]]:
        """
        Engagement figures for published listings, most viewed first.

        `saves` is the live bookmark count, not a stored counter.
        """
        published = [o for o in opportunities_repo.list_all_by_status("approved") if o.get("isPublished")]
        out: list[dict[str, Any]] = []
        for opp in published:
            oid = str(opp.get("_id") or "")
            views = int(opp.get("viewCount") or 0)
            applications = int(opp.get("applicationCount") or 0)
            out.append(
                {
                    "opportunity_id": oid,
                    "title": opp.get("title"),
                    "organization": opp.get("organization"),
                    "views": views,
                    "saves": engagement_repo.count_bookmarks(oid),
                    "applications": applications,
                    "shares": int(opp.get("shareCount") or 0),
                    "conversion_rate": conversion_rate(applications=applications, views=views),
                }
            )
        out.sort(key=lambda r: (-r["views"], str(r["title"] or "")))
        return out[: max(1, int(limit or 50))]

    def _attach_opportunities(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for r in rows:
            opp = opportunities_repo.get_opportunity(str(r.get("opportunityId") or ""))
            out.append({**r, "opportunity": opp})
        return out
