from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    DdbConflict,
    DdbError,
    DdbInternal,
    DdbThrottled,
    DdbUnavailable,
    DdbValidation,
)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 6
    base_delay_s: float = 0.05
    max_delay_s: float = 1.5


# Used for TransactWriteItems, which is more likely to hit contention.
TRANSACTION_RETRY_POLICY = RetryPolicy(max_attempts=8, base_delay_s=0.08, max_delay_s=2.0)

_RETRYABLE_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionConflictException",
}


def _sleep_backoff(policy: RetryPolicy, attempt: int) -> None:
    # Full jitter exponential backoff.
    exp = min(policy.max_delay_s, policy.base_delay_s * (2 ** max(0, attempt - 1)))
    time.sleep(random.random() * exp)


def _aws_request_id(e: ClientError) -> str | None:
    return ((e.response or {}).get("ResponseMetadata") or {}).get("RequestId")


def _error_code(e: ClientError) -> str:
    return str(((e.response or {}).get("Error") or {}).get("Code") or "")


def cancellation_reasons(e: ClientError) -> list[str]:
    """
    Reason codes of a TransactionCanceledException, in transact item order.

    Items that did not fail report "None".
    """
    reasons = (e.response or {}).get("CancellationReasons") or []
    return [str((r or {}).get("Code") or "None") for r in reasons]


def _map_botocore_error(
    *,
    operation: str,
    table_name: str | None,
    key: dict[str, Any] | None,
    exc: Exception,
) -> DdbError:
    if isinstance(exc, DdbError):
        return exc

    ctx: dict[str, Any] = {"operation": operation, "table_name": table_name, "key": key, "cause": exc}

    if isinstance(exc, ClientError):
        code = _error_code(exc)
        rid = _aws_request_id(exc)

        if code == "ConditionalCheckFailedException":
            return DdbConflict(message="DynamoDB conditional check failed", aws_request_id=rid, **ctx)

        if code == "TransactionCanceledException":
            reasons = cancellation_reasons(exc)
            if "TransactionConflict" in reasons or "ThrottlingError" in reasons:
                return DdbThrottled(
                    message="DynamoDB transaction conflicted",
                    aws_request_id=rid,
                    retryable=True,
                    reasons=reasons,
                    **ctx,
                )
            if "ConditionalCheckFailed" in reasons:
                # A uniqueness/existence guard inside the transaction failed;
                # nothing in the transaction was applied.
                return DdbConflict(
                    message="DynamoDB transaction condition failed",
                    aws_request_id=rid,
                    reasons=reasons,
                    **ctx,
                )
            return DdbInternal(
                message="DynamoDB transaction canceled",
                aws_request_id=rid,
                reasons=reasons,
                **ctx,
            )

        if code in ("ValidationException", "ParamValidationError"):
            return DdbValidation(message="DynamoDB request validation failed", aws_request_id=rid, **ctx)

        if code in ("AccessDeniedException", "UnrecognizedClientException", "ResourceNotFoundException"):
            return DdbUnavailable(message=f"DynamoDB unavailable ({code})", aws_request_id=rid, **ctx)

        if code in _RETRYABLE_CODES:
            return DdbThrottled(
                message="DynamoDB request throttled or unavailable",
                aws_request_id=rid,
                retryable=True,
                **ctx,
            )

        return DdbInternal(message=f"DynamoDB request failed ({code or 'ClientError'})", aws_request_id=rid, **ctx)

    if isinstance(exc, BotoCoreError):
        return DdbUnavailable(message="DynamoDB client error", retryable=True, **ctx)

    return DdbInternal(message="Unexpected DynamoDB error", **ctx)


def ddb_call(
    operation: str,
    fn: Callable[[], T],
    *,
    table_name: str | None = None,
    key: dict[str, Any] | None = None,
    retry_policy: RetryPolicy | None = None,
) -> T:
    policy = retry_policy or RetryPolicy()
    attempts = max(1, int(policy.max_attempts))

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:  # noqa: BLE001
            mapped = _map_botocore_error(operation=operation, table_name=table_name, key=key, exc=e)
            # Never retry validation/conflict errors.
            if not mapped.retryable or attempt >= attempts:
                if mapped is e:
                    raise
                raise mapped from e
            _sleep_backoff(policy, attempt)

    raise DdbInternal(message="DynamoDB request failed", operation=operation, table_name=table_name, key=key)
