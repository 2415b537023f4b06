from __future__ import annotations

import pytest

from primechances.db.dynamodb.errors import DdbUnavailable
from primechances.errors import ExternalServiceError, NotFoundError
from primechances.modules.identity.roles import Role
from primechances.modules.notifications.dispatcher import (
    NotificationDispatcher,
    deadline_message,
    matches_interests,
)
from primechances.modules.notifications.stores import DynamoNotificationStore, InMemoryNotificationStore
from primechances.modules.opportunities.opportunity_store import OpportunityStore
from primechances.repositories.user_profiles_repo import upsert_user_profile
from primechances.settings import LifecycleConfig


class RecordingSender:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.calls: list[dict] = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail:
            raise ExternalServiceError(message="SES throttled", service="ses")
        return {"success": True, "messageId": f"m-{len(self.calls)}"}


@pytest.fixture()
def profiles(fake_table):
    upsert_user_profile(
        user_id="cs",
        email="cs@example.org",
        updates={"fieldOfStudy": "Computer Science", "browserNotifications": True},
    )
    upsert_user_profile(user_id="ke", email="ke@example.org", updates={"country": "kenya", "emailNotifications": False})
    upsert_user_profile(user_id="bio", email="bio@example.org", updates={"fieldOfStudy": "biology", "country": "Brazil"})


@pytest.fixture()
def published_opp(fake_table, draft):
    return OpportunityStore().create(
        draft(), actor_id="a1", actor_role=Role.ADMIN, source="admin_created", publish=True
    )


def test_matches_interests_rules():
    opp = {"description": "Open to Computer Science majors", "location": "Lagos, Nigeria", "isRemote": False}
    assert matches_interests(opp, {"fieldOfStudy": "computer science"})
    assert matches_interests(opp, {"country": "NIGERIA"})
    assert not matches_interests(opp, {"fieldOfStudy": "law", "country": "Ghana"})
    assert matches_interests({**opp, "isRemote": True}, {"country": "Ghana"})
    assert not matches_interests({**opp, "isRemote": True}, {"fieldOfStudy": "law"})
    assert not matches_interests(opp, None)


def test_deadline_message_pluralizes():
    assert deadline_message("Grant", 1) == "Grant deadline is in 1 day"
    assert deadline_message("Grant", 4) == "Grant deadline is in 4 days"


def test_published_fanout_notifies_matching_profiles(profiles, published_opp):
    inbox = InMemoryNotificationStore()
    res = NotificationDispatcher(store=inbox).on_opportunity_published(published_opp)

    assert res == {"notified": 2, "emailed": 0, "failed": 0}
    [cs] = inbox.list(user_id="cs")
    assert cs["type"] == "opportunity"
    assert cs["title"] == "New Opportunity Match!"
    assert cs["message"] == "Data Science Fellowship at Open Data Lab matches your interests"
    assert cs["push"] is True
    [ke] = inbox.list(user_id="ke")
    assert ke["push"] is False
    assert inbox.list(user_id="bio") == []


def test_unpublished_opportunity_is_not_fanned_out(profiles, fake_table, draft):
    pending = OpportunityStore().create(draft(), actor_id="u1")
    inbox = InMemoryNotificationStore()
    assert NotificationDispatcher(store=inbox).on_opportunity_published(pending) == {"notified": 0, "emailed": 0, "failed": 0}


def test_emails_follow_config_and_profile_preference(profiles, published_opp):
    sender = RecordingSender()
    config = LifecycleConfig(notification_emails_enabled=True, site_url="https://primechances.test")
    res = NotificationDispatcher(config, store=InMemoryNotificationStore(), email_sender=sender).on_opportunity_published(
        published_opp
    )

    # "ke" opted out of e-mail.
    assert res == {"notified": 2, "emailed": 1, "failed": 0}
    [call] = sender.calls
    assert call["to"] == "cs@example.org"
    assert f"https://primechances.test/opportunity/{published_opp['_id']}" in call["html"]


def test_emails_are_off_unless_enabled(profiles, published_opp):
    sender = RecordingSender()
    NotificationDispatcher(store=InMemoryNotificationStore(), email_sender=sender).on_opportunity_published(published_opp)
    assert sender.calls == []


def test_email_failure_does_not_block_in_app_notification(profiles, published_opp):
    inbox = InMemoryNotificationStore()
    config = LifecycleConfig(notification_emails_enabled=True)
    res = NotificationDispatcher(config, store=inbox, email_sender=RecordingSender(fail=True)).on_opportunity_published(
        published_opp
    )
    assert res == {"notified": 2, "emailed": 0, "failed": 0}
    assert len(inbox.list(user_id="cs")) == 1


def test_submission_review_notifies_human_submitter_only():
    inbox = InMemoryNotificationStore()
    d = NotificationDispatcher(store=inbox)

    n = d.on_submission_reviewed({"_id": "o1", "submittedBy": "u1", "source": "user_submitted"}, "approved")
    assert n["type"] == "approval"
    assert n["title"] == "Submission Update"
    assert n["message"] == "Your submission has been approved"

    assert d.on_submission_reviewed({"_id": "o2", "submittedBy": "scraper", "source": "scraped"}, "rejected") is None
    assert d.on_submission_reviewed({"_id": "o3", "source": "user_submitted"}, "rejected") is None


def test_deadline_dedupe_key_suppresses_repeat():
    inbox = InMemoryNotificationStore()
    d = NotificationDispatcher(store=inbox)
    opp = {"_id": "o1", "title": "Grant"}
    assert d.notify_deadline(user_id="u1", opportunity=opp, days_until=2, dedupe_key="k1") is not None
    assert d.notify_deadline(user_id="u1", opportunity=opp, days_until=2, dedupe_key="k1") is None
    assert d.notify_deadline(user_id="u2", opportunity=opp, days_until=2, dedupe_key="k1") is not None
    assert d.notify_deadline(user_id="u1", opportunity=opp, days_until=1) is not None
    assert len(inbox.list(user_id="u1")) == 2


def test_failed_deadline_add_keeps_reminder_claimable(fake_table, monkeypatch):
    d = NotificationDispatcher(store=DynamoNotificationStore())
    opp = {"_id": "o1", "title": "Grant"}
    real_put = fake_table.put_item

    def notification_rows_fail(*, item, **kwargs):
        if item["sk"].startswith("NOTIFICATION#"):
            raise DdbUnavailable(message="table unavailable", operation="PutItem")
        return real_put(item=item, **kwargs)

    monkeypatch.setattr(fake_table, "put_item", notification_rows_fail)
    with pytest.raises(DdbUnavailable):
        d.notify_deadline(user_id="u1", opportunity=opp, days_until=1, dedupe_key="daily_o1")
    monkeypatch.setattr(fake_table, "put_item", real_put)

    sent = d.notify_deadline(user_id="u1", opportunity=opp, days_until=1, dedupe_key="daily_o1")
    assert sent is not None
    assert d.notify_deadline(user_id="u1", opportunity=opp, days_until=1, dedupe_key="daily_o1") is None


def test_unread_count_and_mark_all_cover_every_page(fake_table):
    d = NotificationDispatcher(store=DynamoNotificationStore())
    opp = {"_id": "o1", "title": "Grant"}
    for _ in range(450):
        d.notify_deadline(user_id="u1", opportunity=opp, days_until=2)

    assert d.unread_count(user_id="u1") == 450
    assert d.mark_all_as_read(user_id="u1") == 450
    assert d.unread_count(user_id="u1") == 0


def test_durable_store_read_state(fake_table):
    d = NotificationDispatcher(store=DynamoNotificationStore())
    opp = {"_id": "o1", "title": "Grant"}
    first = d.notify_deadline(user_id="u1", opportunity=opp, days_until=3)
    d.notify_deadline(user_id="u1", opportunity=opp, days_until=2)
    d.notify_deadline(user_id="u1", opportunity=opp, days_until=1, dedupe_key="once")
    assert d.notify_deadline(user_id="u1", opportunity=opp, days_until=1, dedupe_key="once") is None

    assert d.unread_count(user_id="u1") == 3
    read = d.mark_as_read(user_id="u1", notification_id=first["_id"])
    assert read["isRead"] is True
    assert d.unread_count(user_id="u1") == 2

    assert d.mark_all_as_read(user_id="u1") == 2
    assert d.unread_count(user_id="u1") == 0
    assert d.unread_count(user_id="u2") == 0

    with pytest.raises(NotFoundError):
        d.mark_as_read(user_id="u1", notification_id="does-not-exist")


def test_in_memory_store_rejects_unknown_ids_and_types():
    store = InMemoryNotificationStore()
    with pytest.raises(NotFoundError):
        store.mark_read(user_id="u1", notification_id="x")
    with pytest.raises(ValueError):
        store.add(user_id="u1", type="marketing", title="t", message="m")
