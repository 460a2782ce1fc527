"""
Donor eligibility rule.

A donor must wait 56 days after a donation (84 unless recorded as male)
before donating again. A donor who never donated is eligible right away.
The administrative ``is_eligible`` flag on the donor overrides the cooldown.
"""

from datetime import date, datetime, timedelta
from typing import Optional, Union

from schemas import Donor, Gender

MALE_COOLDOWN_DAYS = 56
DEFAULT_COOLDOWN_DAYS = 84


def _as_date(value: Union[date, datetime, None]) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    return value


def next_eligible_date(last_donation_date, gender=None) -> Optional[date]:
    last = _as_date(last_donation_date)
    if last is None:
        return None
    days = MALE_COOLDOWN_DAYS if gender == Gender.MALE else DEFAULT_COOLDOWN_DAYS
    return last + timedelta(days=days)


def is_eligible(donor: Donor, today: Optional[date] = None) -> bool:
    if not donor.is_eligible:
        return False
    upcoming = next_eligible_date(donor.last_donation_date, donor.gender)
    return upcoming is None or upcoming <= (today or date.today())


class CooldownEligibility:
    """Default eligibility collaborator used by the matching engine."""

    def is_eligible(self, donor: Donor) -> bool:
        return is_eligible(donor)

    def next_eligible_date(self, last_donation_date, gender=None) -> Optional[date]:
        return next_eligible_date(last_donation_date, gender)
