from __future__ import annotations

from typing import Literal, cast

# Canonical error vocabulary for delivery tasks.
ErrorCode = Literal[
    "gateway_timeout",
    "gateway_unavailable",
    "gateway_rate_limited",
    "gateway_rejected",
    "invalid_recipient",
    "issue_missing",
    "lease_expired",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

# Allowed persisted values for last_error_code.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "gateway_timeout",
    "gateway_unavailable",
    "gateway_rate_limited",
    "gateway_rejected",
    "invalid_recipient",
    "issue_missing",
    "lease_expired",
    "internal_error",
)

# Errors that can be retried within the delivery attempt policy.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "gateway_timeout",
        "gateway_unavailable",
        "gateway_rate_limited",
        "lease_expired",
        "internal_error",
    }
)


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_delivery_error(code: str) -> ErrorCode:
    if is_canonical_error_code(code):
        return cast(ErrorCode, code)
    # Keep persistence stable even if a gateway emitted an unsupported code.
    return "internal_error"
