from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(eq=False)
class LifecycleError(Exception):
    """Base error for opportunity lifecycle operations.

    Rendered into RFC7807 problem-details responses by the handler registered
    in `main.create_app`; `http_status` picks the status code.
    """

    message: str
    opportunity_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    http_status = 400

    def __str__(self) -> str:
        return self.message


@dataclass(eq=False)
class ValidationError(LifecycleError):
    """Missing or malformed fields on create/update. Raised before any write."""

    fields: list[str] = field(default_factory=list)


@dataclass(eq=False)
class InvalidStateError(LifecycleError):
    """Illegal lifecycle transition, e.g. publishing a non-approved item."""

    current_status: str | None = None
    attempted: str | None = None

    http_status = 409


@dataclass(eq=False)
class NotFoundError(LifecycleError):
    http_status = 404


@dataclass(eq=False)
class UniqueConstraintError(LifecycleError):
    """Duplicate (user, opportunity) pair. Callers treat this as idempotent success."""

    http_status = 409


@dataclass(eq=False)
class ReferentialIntegrityError(LifecycleError):
    """Delete denied because dependent engagement rows could not be removed."""

    http_status = 409


@dataclass(eq=False)
class PermissionDeniedError(LifecycleError):
    http_status = 403


@dataclass(eq=False)
class ExternalServiceError(LifecycleError):
    """A third-party call (e-mail, payment, AI) failed."""

    service: str | None = None

    http_status = 502


@dataclass(eq=False)
class WatchdogTimeoutError(ExternalServiceError, TimeoutError):
    """Outbound call exceeded the client-side watchdog."""

    http_status = 504
