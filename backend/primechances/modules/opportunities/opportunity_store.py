from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from ...db.dynamodb.errors import DdbConflict, DdbError
from ...errors import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ReferentialIntegrityError,
    ValidationError,
)
from ...observability.logging import get_logger
from ...repositories import opportunities_repo as repo
from ...settings import LifecycleConfig
from ...shared.timeutil import normalize_iso, to_iso, utcnow
from ..identity.roles import Role, is_admin_like
from ..workflow import stage_machine

log = get_logger("opportunity_store")

REQUIRED_FIELDS = ("title", "description", "organization", "categoryId")

EDITABLE_FIELDS = (
    "title",
    "organization",
    "description",
    "categoryId",
    "tags",
    "requirements",
    "benefits",
    "location",
    "isRemote",
    "salaryRange",
    "applicationDeadline",
    "applicationUrl",
    "sourceUrl",
    "isFeatured",
)

_LIST_FIELDS = ("tags", "requirements", "benefits")
_BOOL_FIELDS = ("isRemote", "isFeatured")


def _blank(v: Any) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())


class OpportunityStore:
    """
    Canonical opportunity rows plus their moderation/publication state.

    Every check runs before the first write; status-changing writes are
    conditioned on the status that was read.
    """

    def __init__(self, config: LifecycleConfig | None = None, *, now_fn: Callable[[], datetime] = utcnow):
        self.config = config or LifecycleConfig()
        self._now = now_fn

    def now_iso(self) -> str:
        return to_iso(self._now())

    # --- validation ---

    def _clean_fields(self, data: dict[str, Any], *, partial: bool) -> dict[str, Any]:
        bad: list[str] = []
        out: dict[str, Any] = {}
        for k, v in (data or {}).items():
            if k not in EDITABLE_FIELDS:
                bad.append(k)
                continue
            if k in REQUIRED_FIELDS:
                out[k] = v.strip() if isinstance(v, str) else v
            elif k in _LIST_FIELDS:
                if v is None:
                    v = []
                if not isinstance(v, list):
                    bad.append(k)
                    continue
                out[k] = [str(x).strip() for x in v if str(x or "").strip()]
            elif k in _BOOL_FIELDS:
                out[k] = bool(v)
            elif k == "applicationDeadline":
                try:
                    out[k] = normalize_iso(v)
                except (TypeError, ValueError):
                    bad.append(k)
            else:
                out[k] = v.strip() if isinstance(v, str) else v
        if bad:
            raise ValidationError(message=f"Invalid or non-editable fields: {', '.join(bad)}", fields=bad)

        blanks = [f for f in REQUIRED_FIELDS if (f in out or not partial) and _blank(out.get(f))]
        if blanks:
            raise ValidationError(message=f"Missing required fields: {', '.join(blanks)}", fields=blanks)
        return out

    # --- create ---

    def prepare(
        self,
        data: dict[str, Any],
        *,
        actor_id: str,
        actor_role: Role = Role.USER,
        source: str = "user_submitted",
        publish: bool = False,
    ) -> dict[str, Any]:
        """Validate input and build the row to insert (no write)."""
        if source not in repo.OPPORTUNITY_SOURCES:
            raise ValidationError(message=f"Unknown source: {source}", fields=["source"])
        if source == "admin_created" and not is_admin_like(actor_role):
            raise PermissionDeniedError(message="Only administrators can create listings directly")

        fields = self._clean_fields(dict(data or {}), partial=False)
        now = self.now_iso()
        approved = source == "admin_created"
        if publish and not approved:
            raise InvalidStateError(
                message="Only approved opportunities can be published",
                current_status=stage_machine.PENDING,
                attempted="publish",
            )

        fields.update(
            {
                "status": stage_machine.APPROVED if approved else stage_machine.PENDING,
                "source": source,
                "isPublished": bool(publish),
                "isExpired": False,
                "submittedBy": actor_id,
                "reviewTrail": [],
                "createdAt": now,
                "updatedAt": now,
            }
        )
        for k in _LIST_FIELDS:
            fields.setdefault(k, [])
        if approved:
            fields["approvedBy"] = actor_id
            fields["approvedAt"] = now
        if publish:
            fields["publishedAt"] = now
        return repo.build_opportunity_item(opportunity_id=repo.new_opportunity_id(), fields=fields)

    def create(
        self,
        data: dict[str, Any],
        *,
        actor_id: str,
        actor_role: Role = Role.USER,
        source: str = "user_submitted",
        publish: bool = False,
    ) -> dict[str, Any]:
        item = self.prepare(data, actor_id=actor_id, actor_role=actor_role, source=source, publish=publish)
        repo.put_new_opportunity(item)
        log.info(
            "opportunity_created",
            opportunity_id=item["opportunityId"],
            source=source,
            status=item["status"],
            is_published=item["isPublished"],
        )
        return repo.normalize_opportunity_for_api(item) or {}

    # --- reads ---

    def get(self, opportunity_id: str) -> dict[str, Any]:
        opp = repo.get_opportunity(opportunity_id)
        if not opp:
            raise NotFoundError(message="Opportunity not found", opportunity_id=opportunity_id)
        return opp

    def list_by_status(self, status: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
        if status not in repo.OPPORTUNITY_STATUSES:
            raise ValidationError(message=f"Unknown status: {status}", fields=["status"])
        return repo.list_by_status(status, limit=limit, next_token=next_token)

    def list_published(self) -> list[dict[str, Any]]:
        rows = repo.list_all_by_status(stage_machine.APPROVED)
        return [o for o in rows if o.get("isPublished") and not o.get("isExpired")]

    # --- update ---

    def update(
        self,
        opportunity_id: str,
        patch: dict[str, Any],
        *,
        actor_id: str | None = None,
        extra_sets: dict[str, Any] | None = None,
        only_if_unpublished: bool = False,
    ) -> dict[str, Any]:
        """
        Partial merge over the editable allow-list plus `status`/`isPublished`.

        `extra_sets` lets the workflow attach review metadata to the same write.
        With `only_if_unpublished` the write fails (InvalidStateError) unless the
        stored row is still unpublished, whatever this call read.
        """
        patch = dict(patch or {})
        current = self.get(opportunity_id)
        cur_status = str(current.get("status") or stage_machine.PENDING)

        target_status = patch.pop("status", None)
        want_published = patch.pop("isPublished", None)
        sets = self._clean_fields(patch, partial=True)
        now = self.now_iso()

        new_status = cur_status
        if target_status is not None and target_status != cur_status:
            if target_status not in repo.OPPORTUNITY_STATUSES:
                raise ValidationError(message=f"Unknown status: {target_status}", fields=["status"])
            stage_machine.assert_transition(opportunity=current, target=target_status)
            new_status = target_status
            sets["status"] = new_status
            if new_status == stage_machine.APPROVED:
                sets["approvedBy"] = actor_id
                sets["approvedAt"] = now

        was_published = bool(current.get("isPublished"))
        is_published = was_published if want_published is None else bool(want_published)
        guard_unpublished = is_published and not was_published
        if guard_unpublished:
            stage_machine.assert_publishable({**current, "status": new_status})
            if not current.get("publishedAt"):
                sets["publishedAt"] = now
        if is_published and new_status != stage_machine.APPROVED:
            raise InvalidStateError(
                message="Published opportunities must stay approved",
                opportunity_id=opportunity_id,
                current_status=cur_status,
                attempted=new_status,
            )
        if want_published is not None:
            sets["isPublished"] = is_published

        sets.update(extra_sets or {})
        sets["updatedAt"] = now

        removes: list[str] = []
        if "status" in sets:
            sets["gsi1pk"] = repo.status_index_pk(new_status)
        if "applicationDeadline" in sets:
            deadline = sets["applicationDeadline"]
            if deadline:
                sets.update(
                    repo.index_fields(
                        opportunity_id=opportunity_id,
                        status=new_status,
                        created_at=str(current.get("createdAt") or now),
                        deadline=deadline,
                    )
                )
            else:
                sets.pop("applicationDeadline")
                removes.extend(["applicationDeadline", "gsi2pk", "gsi2sk"])

        try:
            updated = repo.update_opportunity_fields(
                opportunity_id,
                sets=sets,
                removes=removes,
                expected_status=cur_status,
                # Only one writer may flip isPublished false->true.
                expected_not={"isPublished": True} if guard_unpublished or only_if_unpublished else None,
            )
        except DdbConflict as e:
            raise InvalidStateError(
                message="Opportunity was modified concurrently",
                opportunity_id=opportunity_id,
                current_status=cur_status,
                attempted=new_status,
            ) from e
        return updated or {}

    # --- delete ---

    def delete(self, opportunity_id: str, *, actor_id: str | None = None) -> dict[str, Any]:
        """
        Remove engagement rows first, the profile row last.

        If dependents cannot be removed the profile row is kept and
        ReferentialIntegrityError is raised.
        """
        opp = self.get(opportunity_id)
        profile_key = repo.opportunity_key(opportunity_id)

        dependents = [k for k in repo.list_partition_keys(opportunity_id) if k != profile_key]
        sha = repo.source_url_sha(opp.get("sourceUrl"))
        if sha:
            mapping = repo.get_scraped_mapping(sha)
            if mapping and str(mapping.get("opportunityId") or "") == opportunity_id:
                dependents.append(repo.scraped_map_key(sha))

        try:
            removed = repo.delete_keys_in_chunks(dependents)
            # Rows written while the chunks ran go out with the profile row.
            late = [k for k in repo.list_partition_keys(opportunity_id) if k != profile_key]
            tail = repo.MAX_TRANSACT_ITEMS - 1
            if len(late) > tail:
                removed += repo.delete_keys_in_chunks(late[tail:])
            repo.delete_opportunity_row(opportunity_id, extra_keys=late[:tail])
            removed += len(late[:tail])
        except DdbError as e:
            log.error(
                "opportunity_delete_failed",
                opportunity_id=opportunity_id,
                error=str(e),
                dependents=len(dependents),
            )
            raise ReferentialIntegrityError(
                message="Could not remove dependent bookmarks/applications; opportunity kept",
                opportunity_id=opportunity_id,
                details={"dependents": len(dependents)},
            ) from e

        log.info("opportunity_deleted", opportunity_id=opportunity_id, dependents_removed=removed, actor_id=actor_id)
        return {"deleted": True, "opportunity": opp, "dependentsRemoved": removed}
