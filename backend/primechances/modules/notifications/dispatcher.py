from __future__ import annotations

from html import escape
from typing import Any, Callable

from ...db.dynamodb.errors import DdbError
from ...errors import ExternalServiceError
from ...observability.logging import get_logger
from ...repositories import user_profiles_repo
from ...services import email_ses
from ...settings import LifecycleConfig
from .stores import DynamoNotificationStore, NotificationStore

log = get_logger("notification_dispatcher")

EmailSender = Callable[..., dict[str, Any]]


def matches_interests(opportunity: dict[str, Any], profile: dict[str, Any] | None) -> bool:
    """
    Field of study found in the description, or country found in the location,
    or a remote listing for anyone who set a country. Case-insensitive.
    """
    if not profile:
        return False
    field = str(profile.get("fieldOfStudy") or "").strip().lower()
    country = str(profile.get("country") or "").strip().lower()
    description = str(opportunity.get("description") or "").lower()
    location = str(opportunity.get("location") or "").lower()

    if field and field in description:
        return True
    if country and (country in location or bool(opportunity.get("isRemote"))):
        return True
    return False


def deadline_message(title: str, days_until: int) -> str:
    return f"{title} deadline is in {days_until} day{'' if days_until == 1 else 's'}"


class NotificationDispatcher:
    def __init__(
        self,
        config: LifecycleConfig | None = None,
        *,
        store: NotificationStore | None = None,
        email_sender: EmailSender | None = None,
    ):
        self.config = config or LifecycleConfig()
        self.store: NotificationStore = store or DynamoNotificationStore()
        self._send_email = email_sender or email_ses.send_email

    def _add_once(self, *, user_id: str, dedupe_key: str | None, **fields: Any) -> dict[str, Any] | None:
        """
        Add a notification unless `dedupe_key` was already claimed for this user.

        The claim is released again when the add fails, so a retry can send it.
        """
        if dedupe_key and not self.store.claim_reminder(user_id=user_id, dedupe_key=dedupe_key):
            return None
        try:
            return self.store.add(user_id=user_id, **fields)
        except DdbError:
            if dedupe_key:
                self.store.release_reminder(user_id=user_id, dedupe_key=dedupe_key)
            raise

    # --- fan-out ---

    def on_opportunity_published(self, opportunity: dict[str, Any]) -> dict[str, Any]:
        """
        Notify every user whose profile matches the newly published listing.

        Recipients are claimed per publication, so re-running after a partial
        failure only reaches the users that were missed. `failed` counts those.
        """
        if not opportunity.get("isPublished"):
            return {"notified": 0, "emailed": 0, "failed": 0}
        oid = opportunity.get("_id")
        title = "New Opportunity Match!"
        message = f"{opportunity.get('title')} at {opportunity.get('organization')} matches your interests"
        dedupe_key = f"match_{oid}_{opportunity.get('publishedAt')}"

        notified = 0
        emailed = 0
        failed = 0
        for profile in user_profiles_repo.list_all_profiles():
            if not matches_interests(opportunity, profile):
                continue
            uid = str(profile.get("userId") or profile.get("_id") or "")
            if not uid:
                continue
            try:
                n = self._add_once(
                    user_id=uid,
                    dedupe_key=dedupe_key,
                    type="opportunity",
                    title=title,
                    message=message,
                    opportunity_id=oid,
                    push=bool(profile.get("browserNotifications")),
                )
            except DdbError as e:
                failed += 1
                log.warning("published_fanout_recipient_failed", opportunity_id=oid, user_id=uid, error=str(e))
                continue
            if n is None:
                continue
            notified += 1
            if self._maybe_email(profile, subject=title, message=message, opportunity=opportunity):
                emailed += 1

        log.info(
            "published_fanout_done",
            opportunity_id=oid,
            notified=notified,
            emailed=emailed,
            failed=failed,
        )
        return {"notified": notified, "emailed": emailed, "failed": failed}

    def on_submission_reviewed(self, opportunity: dict[str, Any], decision: str) -> dict[str, Any] | None:
        submitter = str(opportunity.get("submittedBy") or "").strip()
        # Scraped rows have no human submitter to tell.
        if not submitter or opportunity.get("source") == "scraped":
            return None
        return self.store.add(
            user_id=submitter,
            type="approval",
            title="Submission Update",
            message=f"Your submission has been {decision}",
            opportunity_id=opportunity.get("_id"),
        )

    def notify_deadline(
        self,
        *,
        user_id: str,
        opportunity: dict[str, Any],
        days_until: int,
        dedupe_key: str | None = None,
    ) -> dict[str, Any] | None:
        """
        One `deadline` notification. With `dedupe_key`, a key already claimed for
        this user suppresses the send (returns None).
        """
        return self._add_once(
            user_id=user_id,
            dedupe_key=dedupe_key,
            type="deadline",
            title="Deadline Approaching!",
            message=deadline_message(str(opportunity.get("title") or ""), int(days_until)),
            opportunity_id=opportunity.get("_id"),
        )

    # --- reads / read state ---

    def list(self, *, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return self.store.list(user_id=user_id, limit=limit)

    def unread_count(self, *, user_id: str) -> int:
        return len(self.store.list_unread(user_id=user_id))

    def mark_as_read(self, *, user_id: str, notification_id: str) -> dict[str, Any]:
        return self.store.mark_read(user_id=user_id, notification_id=notification_id)

    def mark_all_as_read(self, *, user_id: str) -> int:
        changed = 0
        for n in self.store.list_unread(user_id=user_id):
            self.store.mark_read(user_id=user_id, notification_id=str(n["_id"]))
            changed += 1
        return changed

    # --- e-mail ---

    def _maybe_email(
        self,
        profile: dict[str, Any],
        *,
        subject: str,
        message: str,
        opportunity: dict[str, Any],
    ) -> bool:
        if not self.config.notification_emails_enabled or not profile.get("emailNotifications"):
            return False
        to = str(profile.get("email") or "").strip()
        if not to:
            return False
        link = f"{self.config.site_url.rstrip('/')}/opportunity/{opportunity.get('_id')}"
        html = (
            f"<h2>{escape(subject)}</h2>"
            f"<p>{escape(message)}</p>"
            f'<p><a href="{escape(link)}">View opportunity</a></p>'
        )
        try:
            res = self._send_email(
                to=to,
                subject=subject,
                html=html,
                from_email=self.config.email_from,
                reply_to=self.config.email_reply_to,
            )
        except ExternalServiceError as e:
            log.warning("notification_email_failed", user_id=profile.get("userId"), error=str(e))
            return False
        return bool((res or {}).get("success"))
