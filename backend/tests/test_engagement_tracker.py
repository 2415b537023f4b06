from __future__ import annotations

import pytest

from primechances.errors import InvalidStateError, NotFoundError
from primechances.modules.engagement.engagement_tracker import EngagementTracker, conversion_rate
from primechances.modules.identity.roles import Role
from primechances.modules.opportunities.opportunity_store import OpportunityStore
from primechances.repositories import engagement_repo


@pytest.fixture()
def published(fake_table, draft):
    store = OpportunityStore()

    def _make(**overrides):
        return store.create(
            draft(**overrides),
            actor_id="a1",
            actor_role=Role.ADMIN,
            source="admin_created",
            publish=True,
        )

    return _make


def test_toggle_bookmark_flips(published):
    opp = published()
    tracker = EngagementTracker()

    on = tracker.toggle_bookmark(user_id="u1", opportunity_id=opp["_id"])
    assert on == {"bookmarked": True, "changed": True, "action": "created"}

    off = tracker.toggle_bookmark(user_id="u1", opportunity_id=opp["_id"])
    assert off == {"bookmarked": False, "changed": True, "action": "removed"}
    assert engagement_repo.get_bookmark(opp["_id"], "u1") is None


def test_forced_bookmark_is_idempotent(published):
    opp = published()
    tracker = EngagementTracker()
    tracker.toggle_bookmark(user_id="u1", opportunity_id=opp["_id"], desired=True)
    again = tracker.toggle_bookmark(user_id="u1", opportunity_id=opp["_id"], desired=True)
    assert again == {"bookmarked": True, "changed": False, "action": "created"}
    assert engagement_repo.count_bookmarks(opp["_id"]) == 1


def test_bookmark_requires_published_listing(fake_table, draft):
    pending = OpportunityStore().create(draft(), actor_id="u2")
    tracker = EngagementTracker()
    with pytest.raises(InvalidStateError):
        tracker.toggle_bookmark(user_id="u1", opportunity_id=pending["_id"])
    with pytest.raises(NotFoundError):
        tracker.toggle_bookmark(user_id="u1", opportunity_id="missing")


def test_racing_bookmark_insert_reports_existing(published, monkeypatch):
    opp = published()
    tracker = EngagementTracker()
    tracker.toggle_bookmark(user_id="u1", opportunity_id=opp["_id"])

    # Another request inserted the row between our read and our write.
    monkeypatch.setattr(engagement_repo, "get_bookmark", lambda *_a: None)
    res = tracker.toggle_bookmark(user_id="u1", opportunity_id=opp["_id"], desired=True)
    assert res == {"bookmarked": True, "changed": False, "action": "created"}


def test_racing_bookmark_delete_reports_removed(published, monkeypatch):
    opp = published()
    monkeypatch.setattr(engagement_repo, "get_bookmark", lambda *_a: {"_id": "stale"})
    res = EngagementTracker().toggle_bookmark(user_id="u1", opportunity_id=opp["_id"], desired=False)
    assert res == {"bookmarked": False, "changed": False, "action": "removed"}


def test_bookmark_on_listing_deleted_mid_request_leaves_no_row(published, fake_table, monkeypatch):
    opp = published()
    store = OpportunityStore()
    real_put = engagement_repo.put_bookmark

    def delete_then_put(opportunity_id, user_id):
        store.delete(opportunity_id)
        return real_put(opportunity_id, user_id)

    monkeypatch.setattr(engagement_repo, "put_bookmark", delete_then_put)

    with pytest.raises(NotFoundError):
        EngagementTracker().toggle_bookmark(user_id="u1", opportunity_id=opp["_id"])
    assert fake_table.rows_with_prefix(f"OPPORTUNITY#{opp['_id']}", "BOOKMARK#") == []
    assert engagement_repo.list_user_bookmarks("u1")["data"] == []


def test_application_is_recorded_once_and_counted_once(published):
    opp = published(applicationUrl="https://example.org/apply/123")
    tracker = EngagementTracker()

    first = tracker.record_application(user_id="u1", opportunity_id=opp["_id"])
    second = tracker.record_application(user_id="u1", opportunity_id=opp["_id"])

    assert first == {"recorded": True, "alreadyApplied": False, "applicationUrl": "https://example.org/apply/123"}
    assert second["recorded"] is False
    assert second["alreadyApplied"] is True
    assert OpportunityStore().get(opp["_id"])["applicationCount"] == 1


def test_application_requires_published_listing(fake_table, draft):
    pending = OpportunityStore().create(draft(), actor_id="u2")
    with pytest.raises(InvalidStateError):
        EngagementTracker().record_application(user_id="u1", opportunity_id=pending["_id"])
    assert engagement_repo.get_application(pending["_id"], "u1") is None


def test_application_for_listing_deleted_mid_request_is_not_found(fake_table, monkeypatch):
    from primechances.repositories import opportunities_repo

    ghost = {"_id": "ghost", "isPublished": True, "isExpired": False, "status": "approved"}
    monkeypatch.setattr(opportunities_repo, "get_opportunity", lambda _oid: dict(ghost))

    with pytest.raises(NotFoundError):
        EngagementTracker().record_application(user_id="u1", opportunity_id="ghost")
    assert engagement_repo.get_application("ghost", "u1") is None


def test_views_and_shares_are_counted(published):
    opp = published()
    tracker = EngagementTracker()
    tracker.record_view(opp["_id"])
    assert tracker.record_view(opp["_id"]) == {"viewCount": 2}
    assert tracker.record_share(opp["_id"]) == {"shareCount": 1}


def test_counter_on_missing_opportunity_is_not_found(fake_table):
    with pytest.raises(NotFoundError):
        EngagementTracker().record_view("missing")


def test_engagement_status_and_user_lists(published):
    opp = published()
    tracker = EngagementTracker()
    tracker.toggle_bookmark(user_id="u1", opportunity_id=opp["_id"])
    tracker.record_application(user_id="u1", opportunity_id=opp["_id"])

    status = tracker.engagement_status(user_id="u1", opportunity_id=opp["_id"])
    assert status == {"opportunityId": opp["_id"], "bookmarked": True, "applied": True}

    bookmarks = tracker.list_bookmarks(user_id="u1")
    assert [b["opportunity"]["_id"] for b in bookmarks["data"]] == [opp["_id"]]
    applications = tracker.list_applications(user_id="u1")
    assert applications["data"][0]["applicationStatus"] == "applied"
    assert tracker.list_bookmarks(user_id="u2")["data"] == []


def test_analytics_orders_by_views_and_computes_conversion(published):
    quiet = published(title="Quiet listing")
    busy = published(title="Busy listing")
    tracker = EngagementTracker()
    for _ in range(4):
        tracker.record_view(quiet["_id"])
    for _ in range(10):
        tracker.record_view(busy["_id"])
    tracker.record_application(user_id="u1", opportunity_id=quiet["_id"])
    tracker.toggle_bookmark(user_id="u1", opportunity_id=busy["_id"])
    tracker.toggle_bookmark(user_id="u2", opportunity_id=busy["_id"])

    rows = tracker.analytics()

    assert [r["title"] for r in rows] == ["Busy listing", "Quiet listing"]
    assert rows[0]["saves"] == 2
    assert rows[0]["conversion_rate"] == 0.0
    assert rows[1]["applications"] == 1
    assert rows[1]["conversion_rate"] == 25.0


def test_conversion_rate_with_no_views():
    assert conversion_rate(applications=3, views=0) == 0.0
    assert conversion_rate(applications=1, views=3) == 33.33
