from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from ...db.dynamodb.errors import DdbConflict
from ...errors import InvalidStateError, ValidationError
from ...observability.logging import get_logger
from ...repositories import activity_log_repo, opportunities_repo, outbox_repo
from ...settings import LifecycleConfig
from ...shared.timeutil import utcnow
from ..identity.roles import Role
from ..opportunities.opportunity_store import OpportunityStore
from . import stage_machine

log = get_logger("submission_workflow")

DECISION_APPROVED = "approved"
DECISION_REJECTED = "rejected"


class SubmissionWorkflow:
    """
    Intake and moderation: pending -> approved -> (published | held),
    pending -> rejected (terminal).

    Activity-log and outbox writes happen after the transition has landed and
    never undo it.
    """

    def __init__(
        self,
        config: LifecycleConfig | None = None,
        *,
        store: OpportunityStore | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.config = config or LifecycleConfig()
        self.store = store or OpportunityStore(self.config, now_fn=now_fn)

    # --- side effects (best-effort) ---

    def _activity(self, *, admin_id: str | None, action: str, opportunity: dict[str, Any], **details: Any) -> None:
        try:
            activity_log_repo.log_activity(
                admin_id=admin_id,
                action=action,
                target_type="opportunity",
                target_id=opportunity.get("_id"),
                details={"title": opportunity.get("title"), **details},
            )
        except Exception as e:
            log.warning("activity_log_failed", action=action, opportunity_id=opportunity.get("_id"), error=str(e))

    def _enqueue(self, *, event_type: str, opportunity: dict[str, Any], dedupe_key: str, **extra: Any) -> None:
        try:
            outbox_repo.enqueue_event(
                event_type=event_type,
                payload={"opportunityId": opportunity.get("_id"), **extra},
                dedupe_key=dedupe_key,
            )
        except Exception as e:
            log.warning("outbox_enqueue_failed", event_type=event_type, opportunity_id=opportunity.get("_id"), error=str(e))

    # --- intake ---

    def submit(
        self,
        draft: dict[str, Any],
        *,
        submitter_id: str,
        source: str = "user_submitted",
    ) -> dict[str, Any]:
        """
        Create a pending submission. Returns {"opportunity", "created"}.

        Scraped drafts are deduplicated on their normalized source URL; a repeat
        returns the row created the first time with created=False.
        """
        if source == "admin_created":
            raise ValidationError(message="Use create_and_publish for admin listings", fields=["source"])

        if source != "scraped":
            opp = self.store.create(draft, actor_id=submitter_id, source=source)
            return {"opportunity": opp, "created": True}

        sha = opportunities_repo.source_url_sha((draft or {}).get("sourceUrl"))
        if not sha:
            raise ValidationError(message="Scraped submissions need a sourceUrl", fields=["sourceUrl"])

        existing = self._existing_for_sha(sha)
        if existing:
            return {"opportunity": existing, "created": False}

        item = self.store.prepare(draft, actor_id=submitter_id, source="scraped")
        try:
            opportunities_repo.put_opportunity_with_mapping(item, sha=sha)
        except DdbConflict:
            # Lost the race to another intake of the same URL.
            existing = self._existing_for_sha(sha)
            if existing:
                return {"opportunity": existing, "created": False}
            raise
        log.info("scraped_submission_created", opportunity_id=item["opportunityId"], source_url_sha=sha)
        return {"opportunity": opportunities_repo.normalize_opportunity_for_api(item), "created": True}

    def _existing_for_sha(self, sha: str) -> dict[str, Any] | None:
        mapping = opportunities_repo.get_scraped_mapping(sha)
        oid = str((mapping or {}).get("opportunityId") or "").strip()
        return opportunities_repo.get_opportunity(oid) if oid else None

    # --- moderation ---

    def _review(
        self,
        opportunity_id: str,
        *,
        reviewer_id: str,
        decision: str,
        notes: str | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        current = self.store.get(opportunity_id)
        stage_machine.assert_transition(opportunity=current, target=decision)
        if str(current.get("status")) == decision:
            raise InvalidStateError(
                message=f"Submission is already {decision}",
                opportunity_id=opportunity_id,
                current_status=decision,
                attempted=decision,
            )

        entry = {
            "reviewerId": reviewer_id,
            "decision": decision,
            "notes": notes or reason,
            "at": self.store.now_iso(),
        }
        extra: dict[str, Any] = {"reviewTrail": [*(current.get("reviewTrail") or []), entry]}
        if decision == DECISION_REJECTED:
            extra["rejectionReason"] = reason
        return self.store.update(
            opportunity_id,
            {"status": decision},
            actor_id=reviewer_id,
            extra_sets=extra,
        )

    def approve(self, opportunity_id: str, *, reviewer_id: str, notes: str | None = None) -> dict[str, Any]:
        updated = self._review(opportunity_id, reviewer_id=reviewer_id, decision=DECISION_APPROVED, notes=notes)
        log.info("submission_approved", opportunity_id=opportunity_id, reviewer_id=reviewer_id)
        self._activity(admin_id=reviewer_id, action=activity_log_repo.SUBMISSION_APPROVED, opportunity=updated)
        self._enqueue(
            event_type=outbox_repo.EVENT_SUBMISSION_REVIEWED,
            opportunity=updated,
            dedupe_key=f"reviewed_{opportunity_id}",
            decision=DECISION_APPROVED,
        )
        return updated

    def reject(self, opportunity_id: str, *, reviewer_id: str, reason: str | None = None) -> dict[str, Any]:
        updated = self._review(opportunity_id, reviewer_id=reviewer_id, decision=DECISION_REJECTED, reason=reason)
        log.info("submission_rejected", opportunity_id=opportunity_id, reviewer_id=reviewer_id)
        self._activity(
            admin_id=reviewer_id,
            action=activity_log_repo.SUBMISSION_REJECTED,
            opportunity=updated,
            reason=reason,
        )
        self._enqueue(
            event_type=outbox_repo.EVENT_SUBMISSION_REVIEWED,
            opportunity=updated,
            dedupe_key=f"reviewed_{opportunity_id}",
            decision=DECISION_REJECTED,
        )
        return updated

    # --- publication ---

    def publish(self, opportunity_id: str, *, actor_id: str | None = None) -> dict[str, Any]:
        """Idempotent: publishing a published row returns it unchanged."""
        current = self.store.get(opportunity_id)
        if current.get("isPublished"):
            return current
        stage_machine.assert_publishable(current)
        try:
            updated = self.store.update(
                opportunity_id, {"isPublished": True}, actor_id=actor_id, only_if_unpublished=True
            )
        except InvalidStateError:
            latest = self.store.get(opportunity_id)
            if not latest.get("isPublished"):
                raise
            # Another publisher won; its fan-out already ran.
            log.info("opportunity_publish_raced", opportunity_id=opportunity_id, actor_id=actor_id)
            return latest
        log.info("opportunity_published", opportunity_id=opportunity_id, actor_id=actor_id)
        self._after_publish(updated, actor_id=actor_id)
        return updated

    def unpublish(self, opportunity_id: str, *, actor_id: str | None = None) -> dict[str, Any]:
        current = self.store.get(opportunity_id)
        if not current.get("isPublished"):
            raise InvalidStateError(
                message="Opportunity is not published",
                opportunity_id=opportunity_id,
                current_status=str(current.get("status")),
                attempted="unpublish",
            )
        updated = self.store.update(opportunity_id, {"isPublished": False}, actor_id=actor_id)
        log.info("opportunity_unpublished", opportunity_id=opportunity_id, actor_id=actor_id)
        self._activity(admin_id=actor_id, action=activity_log_repo.OPPORTUNITY_UNPUBLISHED, opportunity=updated)
        return updated

    def create_and_publish(self, data: dict[str, Any], *, admin_id: str, admin_role: Role) -> dict[str, Any]:
        """Admin shortcut: one write creating an approved, published row."""
        opp = self.store.create(
            data,
            actor_id=admin_id,
            actor_role=admin_role,
            source="admin_created",
            publish=True,
        )
        self._after_publish(opp, actor_id=admin_id)
        return opp

    def _after_publish(self, opportunity: dict[str, Any], *, actor_id: str | None) -> None:
        self._activity(admin_id=actor_id, action=activity_log_repo.OPPORTUNITY_PUBLISHED, opportunity=opportunity)
        self._enqueue(
            event_type=outbox_repo.EVENT_OPPORTUNITY_PUBLISHED,
            opportunity=opportunity,
            dedupe_key=f"published_{opportunity.get('_id')}_{opportunity.get('publishedAt')}",
        )
