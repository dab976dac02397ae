"""Session status values and the transitions allowed between them."""

from __future__ import annotations

from typing import Dict, FrozenSet, Literal

IDLE = "idle"
PROCESSING = "processing"
AWAITING_ACTION = "awaiting_action"
AWAITING_FOLLOWUP = "awaiting_followup"
FAILED = "failed"

SessionStatus = Literal["idle", "processing", "awaiting_action", "awaiting_followup", "failed"]

ALL_STATUSES: FrozenSet[str] = frozenset({IDLE, PROCESSING, AWAITING_ACTION, AWAITING_FOLLOWUP, FAILED})
TERMINAL_STATUSES: FrozenSet[str] = frozenset({IDLE, FAILED})
IN_FLIGHT_STATUSES: FrozenSet[str] = ALL_STATUSES - TERMINAL_STATUSES

# target status -> statuses it may be entered from
ALLOWED_SOURCES: Dict[str, FrozenSet[str]] = {
    PROCESSING: frozenset({IDLE, FAILED, AWAITING_ACTION}),
    AWAITING_ACTION: frozenset({PROCESSING, AWAITING_FOLLOWUP}),
    AWAITING_FOLLOWUP: frozenset({PROCESSING}),
    IDLE: frozenset({PROCESSING, AWAITING_FOLLOWUP}),
    FAILED: frozenset({PROCESSING, AWAITING_ACTION, AWAITING_FOLLOWUP}),
}


def is_in_flight(status: str | None) -> bool:
    return status in IN_FLIGHT_STATUSES


def can_transition(current: str, target: str) -> bool:
    return current in ALLOWED_SOURCES.get(target, frozenset())
