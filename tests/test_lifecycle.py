from datetime import date, datetime, timedelta

import pytest

from eligibility import CooldownEligibility, is_eligible, next_eligible_date
from errors import InvalidStateError
from lifecycle import (
    TERMINAL_REQUEST_STATES, ensure_request_transition, ensure_unit_transition, is_past_deadline,
    request_deadline, request_sources_for, unit_sources_for,
)
from schemas import BloodRequest, Donor, Gender, RequestStatus, UnitStatus

CREATED = datetime(2024, 3, 1, 8, 0)


def make_request(**kwargs):
    fields = dict(organization_id="org", blood_group="A+", units_needed=1, created_at=CREATED)
    fields.update(kwargs)
    return BloodRequest(**fields)


def test_terminal_states_have_no_exit():
    assert TERMINAL_REQUEST_STATES == {RequestStatus.FULFILLED, RequestStatus.CANCELLED, RequestStatus.EXPIRED}
    for state in TERMINAL_REQUEST_STATES:
        for target in RequestStatus:
            with pytest.raises(InvalidStateError):
                ensure_request_transition(state, target)


def test_allowed_request_moves():
    ensure_request_transition("OPEN", RequestStatus.ASSIGNED)
    ensure_request_transition(RequestStatus.ASSIGNED, "FULFILLED")
    ensure_request_transition(RequestStatus.ASSIGNED, RequestStatus.OPEN)
    with pytest.raises(InvalidStateError):
        ensure_request_transition(RequestStatus.OPEN, RequestStatus.FULFILLED)
    with pytest.raises(InvalidStateError):
        ensure_request_transition(RequestStatus.ASSIGNED, RequestStatus.EXPIRED)


def test_sources_for_targets():
    assert request_sources_for(RequestStatus.CANCELLED) == ("ASSIGNED", "OPEN")
    assert unit_sources_for(UnitStatus.ISSUED) == ("RESERVED",)
    assert "QUARANTINED" in unit_sources_for(UnitStatus.EXPIRED)


def test_unit_moves():
    ensure_unit_transition(UnitStatus.QUARANTINED, UnitStatus.TESTED)
    ensure_unit_transition("TESTED", "AVAILABLE")
    with pytest.raises(InvalidStateError):
        ensure_unit_transition(UnitStatus.ISSUED, UnitStatus.AVAILABLE)
    with pytest.raises(InvalidStateError):
        ensure_unit_transition(UnitStatus.QUARANTINED, UnitStatus.RESERVED)


@pytest.mark.parametrize("urgency, hours", [("CRITICAL", 6), ("HIGH", 24), ("MEDIUM", 72), ("LOW", 168)])
def test_deadline_by_urgency(urgency, hours):
    request = make_request(urgency=urgency)
    assert request_deadline(request) == CREATED + timedelta(hours=hours)
    assert not is_past_deadline(request, CREATED + timedelta(hours=hours, minutes=-1))
    assert is_past_deadline(request, CREATED + timedelta(hours=hours))


def test_required_by_overrides_urgency():
    request = make_request(urgency="LOW", required_by=CREATED + timedelta(hours=2))
    assert is_past_deadline(request, CREATED + timedelta(hours=3))


def test_custom_deadline_table():
    request = make_request(urgency="HIGH")
    table = {"CRITICAL": 1, "HIGH": 2, "MEDIUM": 3, "LOW": 4}
    assert request_deadline(request, table) == CREATED + timedelta(hours=2)


# Eligibility

def test_never_donated_is_eligible():
    donor = Donor(name="Ravi", blood_group="B+")
    assert next_eligible_date(None) is None
    assert is_eligible(donor)


def test_cooldown_depends_on_gender():
    last = datetime(2024, 1, 1, 10, 30)
    assert next_eligible_date(last, Gender.MALE) == date(2024, 2, 26)
    assert next_eligible_date(last, Gender.FEMALE) == date(2024, 3, 25)
    assert next_eligible_date(last) == date(2024, 3, 25)


def test_is_eligible_respects_cooldown_and_flag():
    last = datetime(2024, 1, 1)
    male = Donor(name="Ravi", blood_group="B+", gender="MALE", last_donation_date=last)
    assert not is_eligible(male, today=date(2024, 2, 25))
    assert is_eligible(male, today=date(2024, 2, 26))

    deferred = Donor(name="Mina", blood_group="B+", is_eligible=False)
    assert not is_eligible(deferred)
    assert not CooldownEligibility().is_eligible(deferred)
