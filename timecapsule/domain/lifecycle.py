from __future__ import annotations

from timecapsule.domain.errors import DomainInvariantError
from timecapsule.domain.models import DeliveryStatus


ALLOWED_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    # pending -> failed is reserved for pre-send validation errors.
    DeliveryStatus.PENDING: {DeliveryStatus.PROCESSING, DeliveryStatus.FAILED},
    DeliveryStatus.PROCESSING: {DeliveryStatus.SENT, DeliveryStatus.FAILED},
    DeliveryStatus.SENT: set(),
    DeliveryStatus.FAILED: set(),
}

TERMINAL_STATES: frozenset[DeliveryStatus] = frozenset({DeliveryStatus.SENT, DeliveryStatus.FAILED})

# Owner edits and deletes are only meaningful before the scheduler touches the item.
EDITABLE_STATES: frozenset[DeliveryStatus] = frozenset({DeliveryStatus.PENDING})


def can_transition(from_state: DeliveryStatus, to_state: DeliveryStatus) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, set())


def ensure_transition(from_state: DeliveryStatus, to_state: DeliveryStatus) -> None:
    if not can_transition(from_state, to_state):
        raise DomainInvariantError(f"invalid transition: {from_state} -> {to_state}")
