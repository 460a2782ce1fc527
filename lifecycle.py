"""
State machines for blood requests and blood units.

Only the allowed moves live here. The moves themselves are applied by the
fulfillment and inventory services as conditional updates whose filter is
built from ``sources_for``.
"""

from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Tuple

import config
from errors import InvalidStateError
from schemas import BloodRequest, RequestStatus, UnitStatus, Urgency

REQUEST_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    RequestStatus.OPEN: frozenset({RequestStatus.ASSIGNED, RequestStatus.CANCELLED, RequestStatus.EXPIRED}),
    # back to OPEN when a bank releases everything it reserved
    RequestStatus.ASSIGNED: frozenset({RequestStatus.FULFILLED, RequestStatus.CANCELLED, RequestStatus.OPEN}),
    RequestStatus.FULFILLED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
    RequestStatus.EXPIRED: frozenset(),
}

TERMINAL_REQUEST_STATES = frozenset(s for s, targets in REQUEST_TRANSITIONS.items() if not targets)
ACTIVE_REQUEST_STATES = (RequestStatus.OPEN, RequestStatus.ASSIGNED)

UNIT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    UnitStatus.QUARANTINED: frozenset({UnitStatus.TESTED, UnitStatus.EXPIRED}),
    UnitStatus.TESTED: frozenset({UnitStatus.AVAILABLE, UnitStatus.QUARANTINED, UnitStatus.EXPIRED}),
    UnitStatus.AVAILABLE: frozenset({UnitStatus.RESERVED, UnitStatus.QUARANTINED, UnitStatus.EXPIRED}),
    UnitStatus.RESERVED: frozenset({UnitStatus.AVAILABLE, UnitStatus.ISSUED, UnitStatus.EXPIRED}),
    UnitStatus.ISSUED: frozenset(),
    UnitStatus.EXPIRED: frozenset(),
}

# Moves that only the reservation workflow may make
RESERVATION_MANAGED = frozenset({UnitStatus.RESERVED, UnitStatus.ISSUED})

URGENCY_RANK = {Urgency.CRITICAL: 0, Urgency.HIGH: 1, Urgency.MEDIUM: 2, Urgency.LOW: 3}


def _sources(table, target) -> Tuple[str, ...]:
    return tuple(sorted(s.value for s, targets in table.items() if target in targets))


def request_sources_for(target) -> Tuple[str, ...]:
    return _sources(REQUEST_TRANSITIONS, target)


def unit_sources_for(target) -> Tuple[str, ...]:
    return _sources(UNIT_TRANSITIONS, target)


def ensure_request_transition(current, target, request_id=None):
    if target not in REQUEST_TRANSITIONS[RequestStatus(current)]:
        raise InvalidStateError(
            f"Request cannot move from {RequestStatus(current).value} to {RequestStatus(target).value}",
            request_id=request_id, status=RequestStatus(current).value,
        )


def ensure_unit_transition(current, target, unit_id=None):
    if target not in UNIT_TRANSITIONS[UnitStatus(current)]:
        raise InvalidStateError(
            f"Unit cannot move from {UnitStatus(current).value} to {UnitStatus(target).value}",
            unit_id=unit_id, status=UnitStatus(current).value,
        )


def request_deadline(request: BloodRequest, deadline_hours=None) -> datetime:
    """When an unanswered request lapses: its required_by, else created_at plus the urgency window."""
    if request.required_by is not None:
        return request.required_by
    hours = (deadline_hours or config.REQUEST_DEADLINE_HOURS)[Urgency(request.urgency).value]
    return request.created_at + timedelta(hours=hours)


def is_past_deadline(request: BloodRequest, now: datetime, deadline_hours=None) -> bool:
    return now >= request_deadline(request, deadline_hours)
