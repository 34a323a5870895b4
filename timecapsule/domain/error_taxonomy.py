from __future__ import annotations

from typing import Literal

# Canonical error vocabulary persisted in delivery_items.error_code.
ErrorCode = Literal[
    "validation_error",
    "notifier_rejected",
    "notifier_timeout",
    "notifier_unavailable",
    "claim_expired",
    "internal_error",
]

CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "validation_error",
    "notifier_rejected",
    "notifier_timeout",
    "notifier_unavailable",
    "claim_expired",
    "internal_error",
)

# Default human readable reasons used when the source did not supply one.
DEFAULT_REASONS: dict[ErrorCode, str] = {
    "validation_error": "Delivery item is invalid",
    "notifier_rejected": "Email provider rejected the message",
    "notifier_timeout": "Email provider did not answer in time",
    "notifier_unavailable": "Email provider is unreachable",
    "claim_expired": "Delivery outcome unknown: claim expired while processing",
    "internal_error": "Unknown error occurred",
}


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def resolve_error_code(code: str | None) -> ErrorCode:
    if code is not None and is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persistence stable even if upstream emitted unsupported code.
    return "internal_error"


def failure_reason(code: ErrorCode, detail: str | None) -> str:
    text = (detail or "").strip()
    return text or DEFAULT_REASONS[code]
