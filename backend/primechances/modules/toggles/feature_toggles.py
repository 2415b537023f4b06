from __future__ import annotations

from typing import Any

from ...errors import ValidationError
from ...observability.logging import get_logger
from ...repositories import activity_log_repo, feature_toggles_repo

log = get_logger("feature_toggles")

AUTO_DELETE_EXPIRED_OPPORTUNITIES = "auto_delete_expired_opportunities"


def is_enabled(feature_key: str) -> bool:
    """
    Fail-closed read: an absent row, or a store error, reads as disabled.
    """
    try:
        row = feature_toggles_repo.get_toggle(feature_key)
    except Exception as e:
        log.warning("feature_toggle_read_failed", feature_key=feature_key, error=str(e))
        return False
    return bool(row and row.get("isEnabled"))


def set_toggle(
    *,
    feature_key: str,
    is_enabled: bool,
    admin_id: str | None,
    description: str | None = None,
) -> dict[str, Any]:
    fk = str(feature_key or "").strip()
    if not fk:
        raise ValidationError(message="featureKey is required", fields=["featureKey"])

    row = feature_toggles_repo.put_toggle(
        feature_key=fk,
        is_enabled=bool(is_enabled),
        description=description,
        updated_by=admin_id,
    )
    log.info("feature_toggle_updated", feature_key=fk, is_enabled=bool(is_enabled), admin_id=admin_id)
    try:
        activity_log_repo.log_activity(
            admin_id=admin_id,
            action=activity_log_repo.FEATURE_TOGGLE_UPDATED,
            target_type="feature_toggle",
            target_id=fk,
            details={"is_enabled": bool(is_enabled)},
        )
    except Exception as e:
        log.warning("activity_log_failed", action="FEATURE_TOGGLE_UPDATED", error=str(e))
    return row


def list_toggles() -> list[dict[str, Any]]:
    return feature_toggles_repo.list_toggles()
