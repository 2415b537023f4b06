from __future__ import annotations

import pytest

from primechances.db.dynamodb.errors import DdbUnavailable
from primechances.errors import ValidationError
from primechances.infrastructure.allowlist import is_allowed_email, parse_csv
from primechances.modules.identity.admin_allowlist import assign_admin_role, effective_role
from primechances.modules.identity.roles import (
    Role,
    can_administer,
    can_moderate,
    parse_role,
    resolve_role,
)
from primechances.modules.toggles import feature_toggles
from primechances.repositories import activity_log_repo, user_roles_repo
from primechances.settings import LifecycleConfig


def test_parse_role_variants():
    assert parse_role("Admin") is Role.ADMIN
    assert parse_role("staff-admin") is Role.STAFF_ADMIN
    assert parse_role("member") is Role.USER
    assert parse_role("owner") is None
    assert parse_role(None) is None


def test_resolve_role_precedence():
    assert resolve_role([]) is Role.USER
    assert resolve_role(["user", "staff_admin"]) is Role.STAFF_ADMIN
    assert resolve_role(["staff_admin", "admin", "user"]) is Role.ADMIN
    assert resolve_role("bogus") is Role.USER


def test_permissions_by_role():
    assert can_moderate(Role.ADMIN) and can_administer(Role.ADMIN)
    assert can_moderate(Role.STAFF_ADMIN) and not can_administer(Role.STAFF_ADMIN)
    assert not can_moderate(Role.USER) and not can_administer(Role.USER)


def test_allowlist_helpers():
    assert parse_csv(" a@x.org, ,b@x.org,a@x.org ") == ["a@x.org", "b@x.org"]
    assert is_allowed_email("A@X.org", ["a@x.org"])
    assert not is_allowed_email("a@x.org", [])
    assert not is_allowed_email("not-an-email", ["not-an-email"])


def test_assign_admin_role_without_configuration(fake_table):
    res = assign_admin_role(user_id="u1", email="a@x.org", admin_emails=())
    assert res == {"message": "No admin emails configured", "is_admin": False}
    assert effective_role("u1") is Role.USER


def test_assign_admin_role_for_unlisted_email(fake_table):
    res = assign_admin_role(user_id="u1", email="b@x.org", admin_emails=("a@x.org",))
    assert res == {"message": "User is not an admin", "is_admin": False}
    assert user_roles_repo.list_roles(user_id="u1") == []


def test_assign_admin_role_is_idempotent(fake_table):
    first = assign_admin_role(user_id="u1", email="A@x.org", admin_emails=("a@x.org",))
    second = assign_admin_role(user_id="u1", email="a@x.org", admin_emails=("a@x.org",))

    assert first == second == {"message": "Admin role assigned", "is_admin": True}
    assert user_roles_repo.list_roles(user_id="u1") == ["admin"]
    assert effective_role("u1") is Role.ADMIN
    actions = [r["action"] for r in fake_table.rows_with_prefix("ACTIVITY")]
    assert actions.count(activity_log_repo.ADMIN_ROLE_ASSIGNED) == 1


def test_assign_admin_role_requires_identity(fake_table):
    with pytest.raises(ValidationError) as ei:
        assign_admin_role(user_id="u1", email="  ", admin_emails=("a@x.org",))
    assert ei.value.fields == ["email"]


def test_admin_emails_are_read_from_settings_csv():
    from primechances.settings import Settings

    s = Settings(ADMIN_EMAILS="Ops@Example.org, dev@example.org")
    assert LifecycleConfig.from_settings(s).admin_emails == ("ops@example.org", "dev@example.org")


def test_lifecycle_config_rejects_unknown_policy():
    with pytest.raises(ValueError):
        LifecycleConfig(deadline_reminder_policy="hourly")


def test_toggle_absent_reads_disabled(fake_table):
    assert feature_toggles.is_enabled(feature_toggles.AUTO_DELETE_EXPIRED_OPPORTUNITIES) is False


def test_toggle_set_and_list(fake_table):
    row = feature_toggles.set_toggle(
        feature_key="auto_delete_expired_opportunities",
        is_enabled=True,
        admin_id="a1",
        description="Nightly cleanup",
    )
    assert row["isEnabled"] is True
    assert row["updatedBy"] == "a1"
    assert feature_toggles.is_enabled("auto_delete_expired_opportunities") is True

    feature_toggles.set_toggle(feature_key="auto_delete_expired_opportunities", is_enabled=False, admin_id="a2")
    [listed] = feature_toggles.list_toggles()
    assert listed["isEnabled"] is False
    # Description survives an update that does not send one.
    assert listed["description"] == "Nightly cleanup"

    actions = [r["action"] for r in fake_table.rows_with_prefix("ACTIVITY")]
    assert actions.count(activity_log_repo.FEATURE_TOGGLE_UPDATED) == 2


def test_toggle_read_failure_fails_closed(fake_table):
    feature_toggles.set_toggle(feature_key="f", is_enabled=True, admin_id="a1")
    fake_table.fail_ops["get_item"] = DdbUnavailable(message="no route to table", operation="GetItem")
    assert feature_toggles.is_enabled("f") is False


def test_toggle_key_is_required(fake_table):
    with pytest.raises(ValidationError):
        feature_toggles.set_toggle(feature_key=" ", is_enabled=True, admin_id="a1")
