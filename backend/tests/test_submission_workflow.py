from __future__ import annotations

from datetime import timedelta

import pytest

from primechances.errors import InvalidStateError, PermissionDeniedError, ValidationError
from primechances.modules.identity.roles import Role
from primechances.modules.workflow import stage_machine
from primechances.modules.workflow.submission_workflow import SubmissionWorkflow
from primechances.repositories import activity_log_repo


def _outbox(fake_table, event_type: str | None = None):
    rows = fake_table.rows_with_prefix("OUTBOX#")
    return [r for r in rows if event_type is None or r["eventType"] == event_type]


def _actions(fake_table):
    return [r["action"] for r in fake_table.rows_with_prefix("ACTIVITY")]


def test_submit_creates_pending_row(fake_table, draft):
    wf = SubmissionWorkflow()
    res = wf.submit(draft(), submitter_id="u1")
    assert res["created"] is True
    assert res["opportunity"]["status"] == "pending"
    assert res["opportunity"]["source"] == "user_submitted"


def test_submit_refuses_admin_created_source(fake_table, draft):
    with pytest.raises(ValidationError):
        SubmissionWorkflow().submit(draft(), submitter_id="u1", source="admin_created")


def test_scraped_submissions_are_deduplicated_by_source_url(fake_table, draft):
    wf = SubmissionWorkflow()
    first = wf.submit(draft(sourceUrl="https://Jobs.Example.org/listing/42/"), submitter_id="bot", source="scraped")
    second = wf.submit(draft(sourceUrl="https://jobs.example.org/listing/42"), submitter_id="bot", source="scraped")

    assert first["created"] is True
    assert second["created"] is False
    assert second["opportunity"]["_id"] == first["opportunity"]["_id"]
    profiles = [r for r in fake_table.rows_with_prefix("OPPORTUNITY#") if r["sk"] == "PROFILE"]
    assert len(profiles) == 1
    assert len(fake_table.rows_with_prefix("SCRAPEDURL#")) == 1


def test_scraped_submission_needs_source_url(fake_table, draft):
    with pytest.raises(ValidationError) as ei:
        SubmissionWorkflow().submit(draft(), submitter_id="bot", source="scraped")
    assert ei.value.fields == ["sourceUrl"]


def test_approve_records_review_and_enqueues_event(fake_table, draft):
    wf = SubmissionWorkflow()
    oid = wf.submit(draft(), submitter_id="u1")["opportunity"]["_id"]

    opp = wf.approve(oid, reviewer_id="a1", notes="looks good")

    assert opp["status"] == "approved"
    assert opp["isPublished"] is False
    assert opp["reviewTrail"][-1]["reviewerId"] == "a1"
    assert opp["reviewTrail"][-1]["decision"] == "approved"
    assert opp["reviewTrail"][-1]["notes"] == "looks good"
    assert activity_log_repo.SUBMISSION_APPROVED in _actions(fake_table)
    events = _outbox(fake_table, "submission.reviewed")
    assert len(events) == 1
    assert events[0]["payload"] == {"opportunityId": oid, "decision": "approved"}


def test_approve_twice_is_an_invalid_transition(fake_table, draft):
    wf = SubmissionWorkflow()
    oid = wf.submit(draft(), submitter_id="u1")["opportunity"]["_id"]
    wf.approve(oid, reviewer_id="a1")
    with pytest.raises(InvalidStateError):
        wf.approve(oid, reviewer_id="a2")


def test_rejected_is_terminal(fake_table, draft):
    wf = SubmissionWorkflow()
    oid = wf.submit(draft(), submitter_id="u1")["opportunity"]["_id"]

    opp = wf.reject(oid, reviewer_id="a1", reason="duplicate listing")
    assert opp["status"] == "rejected"
    assert opp["rejectionReason"] == "duplicate listing"
    assert activity_log_repo.SUBMISSION_REJECTED in _actions(fake_table)

    with pytest.raises(InvalidStateError) as ei:
        wf.approve(oid, reviewer_id="a1")
    assert ei.value.current_status == "rejected"
    with pytest.raises(InvalidStateError):
        wf.publish(oid, actor_id="a1")


def test_activity_log_failure_does_not_undo_transition(fake_table, draft, monkeypatch):
    wf = SubmissionWorkflow()
    oid = wf.submit(draft(), submitter_id="u1")["opportunity"]["_id"]

    def boom(**_kw):
        raise RuntimeError("activity store down")

    monkeypatch.setattr(activity_log_repo, "log_activity", boom)
    assert wf.approve(oid, reviewer_id="a1")["status"] == "approved"
    assert wf.store.get(oid)["status"] == "approved"


def test_publish_requires_approved(fake_table, draft):
    wf = SubmissionWorkflow()
    oid = wf.submit(draft(), submitter_id="u1")["opportunity"]["_id"]
    with pytest.raises(InvalidStateError) as ei:
        wf.publish(oid, actor_id="a1")
    assert ei.value.attempted == "publish"


def test_publish_is_idempotent(fake_table, draft):
    wf = SubmissionWorkflow()
    oid = wf.submit(draft(), submitter_id="u1")["opportunity"]["_id"]
    wf.approve(oid, reviewer_id="a1")

    first = wf.publish(oid, actor_id="a1")
    second = wf.publish(oid, actor_id="a1")

    assert first["isPublished"] is True
    assert second["publishedAt"] == first["publishedAt"]
    assert len(_outbox(fake_table, "opportunity.published")) == 1
    assert _actions(fake_table).count(activity_log_repo.OPPORTUNITY_PUBLISHED) == 1


def test_concurrent_publish_fans_out_once(fake_table, draft, clock, monkeypatch):
    wf = SubmissionWorkflow(now_fn=clock)
    oid = wf.submit(draft(), submitter_id="u1")["opportunity"]["_id"]
    wf.approve(oid, reviewer_id="a1")
    stale = wf.store.get(oid)

    first = wf.publish(oid, actor_id="a1")

    # The second publisher read the row before the first one wrote.
    clock.now += timedelta(hours=1)
    real_get = wf.store.get
    reads = iter([stale])
    monkeypatch.setattr(wf.store, "get", lambda opportunity_id: next(reads, None) or real_get(opportunity_id))
    second = wf.publish(oid, actor_id="a2")

    assert second["isPublished"] is True
    assert second["publishedAt"] == first["publishedAt"]
    assert len(_outbox(fake_table, "opportunity.published")) == 1
    assert _actions(fake_table).count(activity_log_repo.OPPORTUNITY_PUBLISHED) == 1


def test_unpublish_and_republish_keep_first_published_at(fake_table, draft, clock):
    wf = SubmissionWorkflow(now_fn=clock)
    oid = wf.submit(draft(), submitter_id="u1")["opportunity"]["_id"]
    wf.approve(oid, reviewer_id="a1")
    first = wf.publish(oid, actor_id="a1")

    with pytest.raises(InvalidStateError):
        wf.unpublish(wf.submit(draft(), submitter_id="u2")["opportunity"]["_id"])

    clock.now += timedelta(hours=5)
    held = wf.unpublish(oid, actor_id="a1")
    assert held["isPublished"] is False
    assert held["status"] == "approved"
    assert stage_machine.compute_stage(held) == "approved"

    again = wf.publish(oid, actor_id="a1")
    assert again["publishedAt"] == first["publishedAt"]
    assert stage_machine.compute_stage(again) == "published"


def test_create_and_publish_for_admins(fake_table, draft):
    wf = SubmissionWorkflow()
    opp = wf.create_and_publish(draft(), admin_id="a1", admin_role=Role.STAFF_ADMIN)
    assert opp["status"] == "approved"
    assert opp["isPublished"] is True
    assert opp["source"] == "admin_created"
    events = _outbox(fake_table, "opportunity.published")
    assert [e["payload"]["opportunityId"] for e in events] == [opp["_id"]]


def test_create_and_publish_denied_for_users(fake_table, draft):
    with pytest.raises(PermissionDeniedError):
        SubmissionWorkflow().create_and_publish(draft(), admin_id="u1", admin_role=Role.USER)
    assert fake_table.items == {}


def test_expired_row_cannot_be_published(fake_table, draft):
    wf = SubmissionWorkflow()
    oid = wf.submit(draft(), submitter_id="u1")["opportunity"]["_id"]
    wf.approve(oid, reviewer_id="a1")
    fake_table.items[(f"OPPORTUNITY#{oid}", "PROFILE")]["isExpired"] = True
    with pytest.raises(InvalidStateError):
        wf.publish(oid, actor_id="a1")


def test_stage_machine_transitions():
    assert stage_machine.can_transition("pending", "approved")
    assert stage_machine.can_transition("pending", "rejected")
    assert stage_machine.can_transition("approved", "approved")
    assert not stage_machine.can_transition("approved", "rejected")
    assert not stage_machine.can_transition("rejected", "pending")
    assert stage_machine.compute_stage({"status": "approved", "isExpired": True}) == "expired"
