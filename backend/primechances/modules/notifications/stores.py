from __future__ import annotations

import threading
import uuid
from typing import Any, Protocol

from ...db.dynamodb.errors import DdbConflict
from ...errors import NotFoundError
from ...repositories import notifications_repo
from ...shared.timeutil import now_iso


class NotificationStore(Protocol):
    def add(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        opportunity_id: str | None = None,
        push: bool = False,
    ) -> dict[str, Any]: ...

    def list(self, *, user_id: str, limit: int = 50) -> list[dict[str, Any]]: ...

    def mark_read(self, *, user_id: str, notification_id: str) -> dict[str, Any]: ...

    def list_unread(self, *, user_id: str) -> list[dict[str, Any]]: ...

    def claim_reminder(self, *, user_id: str, dedupe_key: str) -> bool: ...

    def release_reminder(self, *, user_id: str, dedupe_key: str) -> None: ...


class DynamoNotificationStore:
    """Durable store: one row per notification under the user's partition."""

    def add(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        opportunity_id: str | None = None,
        push: bool = False,
    ) -> dict[str, Any]:
        return notifications_repo.put_notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            opportunity_id=opportunity_id,
            push=push,
        )

    def list(self, *, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return notifications_repo.list_notifications(user_id=user_id, limit=limit)

    def mark_read(self, *, user_id: str, notification_id: str) -> dict[str, Any]:
        try:
            updated = notifications_repo.mark_read(user_id=user_id, notification_id=notification_id)
        except DdbConflict as e:
            raise NotFoundError(message="Notification not found") from e
        return updated or {}

    def list_unread(self, *, user_id: str) -> list[dict[str, Any]]:
        return notifications_repo.list_unread_notifications(user_id=user_id)

    def claim_reminder(self, *, user_id: str, dedupe_key: str) -> bool:
        return notifications_repo.claim_reminder(user_id=user_id, dedupe_key=dedupe_key)

    def release_reminder(self, *, user_id: str, dedupe_key: str) -> None:
        notifications_repo.release_reminder(user_id=user_id, dedupe_key=dedupe_key)


class InMemoryNotificationStore:
    """
    Process-local store. Read state lives only as long as this object does, so
    it suits tests and single-session tooling, not a multi-instance API.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, list[dict[str, Any]]] = {}
        self._reminders: set[tuple[str, str]] = set()

    def add(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        opportunity_id: str | None = None,
        push: bool = False,
    ) -> dict[str, Any]:
        if type not in notifications_repo.NOTIFICATION_TYPES:
            raise ValueError(f"unknown notification type: {type}")
        row = {
            "_id": uuid.uuid4().hex,
            "userId": user_id,
            "type": type,
            "title": title,
            "message": message,
            "opportunityId": opportunity_id,
            "isRead": False,
            "push": bool(push),
            "createdAt": now_iso(),
        }
        with self._lock:
            self._rows.setdefault(user_id, []).append(row)
        return dict(row)

    def list(self, *, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            rows = list(reversed(self._rows.get(user_id, [])))
        return [dict(r) for r in rows[: max(1, int(limit or 50))]]

    def mark_read(self, *, user_id: str, notification_id: str) -> dict[str, Any]:
        with self._lock:
            for r in self._rows.get(user_id, []):
                if r["_id"] == notification_id:
                    r["isRead"] = True
                    return dict(r)
        raise NotFoundError(message="Notification not found")

    def list_unread(self, *, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = list(reversed(self._rows.get(user_id, [])))
        return [dict(r) for r in rows if not r["isRead"]]

    def claim_reminder(self, *, user_id: str, dedupe_key: str) -> bool:
        with self._lock:
            if (user_id, dedupe_key) in self._reminders:
                return False
            self._reminders.add((user_id, dedupe_key))
            return True

    def release_reminder(self, *, user_id: str, dedupe_key: str) -> None:
        with self._lock:
            self._reminders.discard((user_id, dedupe_key))
