from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class DdbError(Exception):
    """Base error for DynamoDB operations.

    These are caught by a FastAPI exception handler and rendered into
    RFC7807 problem-details responses.
    """

    message: str
    operation: str | None = None
    table_name: str | None = None
    key: dict[str, Any] | None = None
    aws_request_id: str | None = None
    retryable: bool = False
    # TransactWriteItems cancellation reason codes, one per transact item.
    reasons: list[str] | None = None
    cause: Exception | None = None

    def __str__(self) -> str:
        return self.message

    def condition_failed_at(self, index: int) -> bool:
        """True when transact item `index` (puts, then deletes, updates, checks) failed its condition."""
        r = self.reasons or []
        return 0 <= index < len(r) and r[index] == "ConditionalCheckFailed"


@dataclass(slots=True)
class DdbNotFound(DdbError):
    pass


@dataclass(slots=True)
class DdbConflict(DdbError):
    """A condition expression failed (uniqueness, expected status, existence)."""


@dataclass(slots=True)
class DdbValidation(DdbError):
    pass


@dataclass(slots=True)
class DdbThrottled(DdbError):
    pass


@dataclass(slots=True)
class DdbUnavailable(DdbError):
    pass


@dataclass(slots=True)
class DdbInternal(DdbError):
    pass
