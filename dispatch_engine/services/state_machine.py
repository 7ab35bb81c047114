"""
Allowed status transitions for requests, assignments and offers.

Conditional updates elsewhere use ``sources_for`` to build their
``WHERE status IN (...)`` guard, so these tables are the single source of truth.
"""
from enum import Enum

from dispatch_engine.schemas.schemas import (
    AssignmentStatusEnum as A,
    OfferStatusEnum as O,
    RequestStatusEnum as R,
)

REQUEST_TRANSITIONS: dict[R, set[R]] = {
    R.pending: {R.dispatching, R.bidding, R.cancelled},
    R.bidding: {R.accepted, R.bidding_closed, R.cancelled},
    R.bidding_closed: {R.dispatching, R.cancelled},
    # dispatching -> dispatching is a resume after a driver-side cancellation
    R.dispatching: {R.dispatching, R.accepted, R.no_drivers_available, R.cancelled},
    R.accepted: {R.in_progress, R.dispatching, R.cancelled_by_client},
    R.in_progress: {R.completed},
    R.completed: set(),
    R.no_drivers_available: set(),
    R.cancelled: set(),
    R.cancelled_by_client: set(),
}

ASSIGNMENT_TRANSITIONS: dict[A, set[A]] = {
    A.pending: {A.accepted, A.rejected, A.timed_out, A.cancelled},
    A.accepted: {A.completed, A.cancelled},
    A.rejected: set(),
    A.timed_out: set(),
    A.cancelled: set(),
    A.completed: set(),
}

OFFER_TRANSITIONS: dict[O, set[O]] = {
    O.pending: {O.accepted, O.rejected, O.expired, O.withdrawn},
    O.accepted: set(),
    O.rejected: set(),
    O.expired: set(),
    O.withdrawn: set(),
}

TERMINAL_REQUEST_STATUSES = frozenset(s for s, nxt in REQUEST_TRANSITIONS.items() if not nxt)

_TABLES: dict[type[Enum], dict] = {
    R: REQUEST_TRANSITIONS,
    A: ASSIGNMENT_TRANSITIONS,
    O: OFFER_TRANSITIONS,
}


def is_valid_transition(current: Enum, next_state: Enum) -> bool:
    table = _TABLES[type(current)]
    return next_state in table.get(current, set())


def sources_for(target: Enum) -> list[Enum]:
    """Every status from which ``target`` may be entered, in declaration order."""
    table = _TABLES[type(target)]
    return [src for src, allowed in table.items() if target in allowed]
