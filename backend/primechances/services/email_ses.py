from __future__ import annotations

from functools import lru_cache
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from ..errors import ExternalServiceError, WatchdogTimeoutError
from ..observability.logging import get_logger
from ..settings import settings

log = get_logger("email_ses")


@lru_cache(maxsize=1)
def _sesv2_client():
    timeout = float(settings.outbound_timeout_seconds)
    return boto3.client(
        "sesv2",
        region_name=settings.aws_region,
        config=Config(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 2, "mode": "standard"},
        ),
    )


def deliver(*, to: str, subject: str, html: str, from_email: str, reply_to: str | None = None) -> str | None:
    """
    Send one HTML e-mail through SES v2 and return the MessageId.

    Raises WatchdogTimeoutError when the client-side timeout fires and
    ExternalServiceError for any other delivery failure.
    """
    kwargs: dict[str, Any] = {
        "FromEmailAddress": from_email,
        "Destination": {"ToAddresses": [to]},
        "Content": {
            "Simple": {
                "Subject": {"Data": subject},
                "Body": {"Html": {"Data": html}},
            }
        },
    }
    if reply_to:
        kwargs["ReplyToAddresses"] = [reply_to]
    try:
        resp = _sesv2_client().send_email(**kwargs)
    except (ConnectTimeoutError, ReadTimeoutError) as e:
        raise WatchdogTimeoutError(message="E-mail delivery timed out", service="ses") from e
    except (ClientError, BotoCoreError) as e:
        raise ExternalServiceError(message=f"E-mail delivery failed: {e}", service="ses") from e
    return (resp or {}).get("MessageId") if isinstance(resp, dict) else None


def send_email(
    *,
    to: str,
    subject: str,
    html: str,
    from_email: str | None = None,
    reply_to: str | None = None,
) -> dict[str, Any]:
    """
    Result-shaped wrapper: {"success": True, "messageId"} or {"success": False, "error"}.
    """
    to_ = str(to or "").strip()
    frm = str(from_email or settings.ses_from_email or "").strip()
    subj = str(subject or "").strip()[:200] or "PrimeChances"
    if not to_ or not frm:
        return {"success": False, "error": "missing_to_or_from"}
    try:
        msg_id = deliver(
            to=to_,
            subject=subj,
            html=str(html or "") or "(empty)",
            from_email=frm,
            reply_to=str(reply_to or settings.ses_reply_to or "").strip() or None,
        )
    except ExternalServiceError as e:
        log.warning("email_send_failed", to=to_, service=e.service, timeout=isinstance(e, WatchdogTimeoutError), error=str(e))
        return {"success": False, "error": str(e)}
    log.info("email_sent", to=to_, message_id=msg_id)
    return {"success": True, "messageId": msg_id}
