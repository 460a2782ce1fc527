"""
Matching engine: who can answer a blood request.

All queries here are read-only. Eligibility and distance come from
collaborators that are called with a bounded timeout; a slow eligibility
service fails the query with ExternalServiceError, a slow distance service
only costs the ranking.
"""

import logging
from typing import List, Optional

from compatibility import can_supply, compatible_donors, compatible_recipients
from database import utcnow
from eligibility import CooldownEligibility
from errors import ExternalServiceError, InvalidStateError
from external import call_with_timeout
from geo import HaversineDistance
from lifecycle import ACTIVE_REQUEST_STATES, URGENCY_RANK
from repository import Store
from schemas import (
    BankMatch, BloodRequest, Component, DonorFeed, DonorFeedItem, DonorMatch, GeoPoint, IncomingRequest,
    MatchResult, OrgType, RequestStatus,
)

logger = logging.getLogger(__name__)


def _distance_key(distance: Optional[float]):
    return (distance is None, distance if distance is not None else 0.0)


class MatchingEngine:
    def __init__(self, store: Store, eligibility=None, distance=None, timeout: float = None, clock=utcnow):
        self.store = store
        self.eligibility = eligibility or CooldownEligibility()
        self.geo = distance or HaversineDistance()
        self.timeout = timeout
        self.clock = clock

    def _is_eligible(self, donor) -> bool:
        return call_with_timeout("eligibility", self.eligibility.is_eligible, donor, timeout=self.timeout)

    def _distance(self, a: Optional[GeoPoint], b: Optional[GeoPoint]) -> Optional[float]:
        if a is None or b is None:
            return None
        try:
            return call_with_timeout("distance", self.geo.distance, a, b, timeout=self.timeout)
        except ExternalServiceError:
            return None

    def find_matches(self, request_id: str) -> MatchResult:
        request = self.store.requests.get(request_id)
        if request.status != RequestStatus.OPEN:
            raise InvalidStateError("Matches are only computed for OPEN requests",
                                    request_id=request_id, status=request.status)
        result = MatchResult(
            request_id=request.id,
            donors=self._donor_matches(request),
            blood_banks=self._bank_matches(request),
        )
        logger.debug("Request %s matched %d donor(s), %d bank(s)", request.id, len(result.donors), len(result.blood_banks))
        return result

    def _donor_matches(self, request: BloodRequest) -> List[DonorMatch]:
        interests = self.store.interests.for_request(request.id)
        donors = self.store.donors.get_many([i.donor_id for i in interests])
        matches = []
        for interest in interests:
            donor = donors.get(interest.donor_id)
            if donor is None:
                continue
            if not can_supply(donor.blood_group, request.blood_group, request.component):
                continue
            if not self._is_eligible(donor):
                continue
            matches.append(DonorMatch(
                donor_id=donor.id,
                name=donor.name,
                blood_group=donor.blood_group,
                phone=donor.phone,
                distance_km=self._distance(request.location, donor.location),
                interested_at=interest.created_at,
                next_eligible_date=self.eligibility.next_eligible_date(donor.last_donation_date, donor.gender),
            ))
        # nearest first, most recent interest breaks ties and covers unknown distances
        matches.sort(key=lambda m: (_distance_key(m.distance_km), -m.interested_at.timestamp()))
        return matches

    def _bank_matches(self, request: BloodRequest) -> List[BankMatch]:
        groups = compatible_donors(request.blood_group, request.component)
        stock = self.store.units.available_stock(groups, request.component, self.clock(),
                                                 exclude_org=request.organization_id)
        orgs = self.store.organizations.get_many(stock.keys())
        matches = []
        for org_id, row in stock.items():
            org = orgs.get(org_id)
            if org is None or org.org_type != OrgType.BANK:
                continue
            matches.append(BankMatch(
                organization_id=org.id,
                name=org.name,
                city=org.city,
                phone=org.phone,
                available_units=row["available_units"],
                can_fulfill=row["available_units"] >= request.units_needed,
                distance_km=self._distance(request.location, org.location),
                soonest_expiry=row["soonest_expiry"],
            ))
        matches.sort(key=lambda m: (not m.can_fulfill, _distance_key(m.distance_km), m.soonest_expiry))
        return matches

    def incoming_requests(self, organization_id: str) -> List[IncomingRequest]:
        """OPEN requests from other organizations this bank holds compatible stock for."""
        bank = self.store.organizations.get(organization_id)
        now = self.clock()
        items = []
        for request in self.store.requests.open_requests(exclude_org=organization_id):
            groups = compatible_donors(request.blood_group, request.component)
            stock = self.store.units.available_stock(groups, request.component, now, organization_id=organization_id)
            available = stock.get(organization_id, {}).get("available_units", 0)
            if not available:
                continue
            items.append(IncomingRequest(
                request=request,
                available_units=available,
                can_fulfill=available >= request.units_needed,
                distance_km=self._distance(bank.location, request.location),
            ))
        items.sort(key=lambda i: (URGENCY_RANK[i.request.urgency], -i.request.created_at.timestamp()))
        return items

    def requests_for_donor(self, donor_id: str, max_km: Optional[float] = None) -> DonorFeed:
        """Active requests the donor's blood could answer, nearest first."""
        donor = self.store.donors.get(donor_id)
        recipients = set(compatible_recipients(donor.blood_group, Component.RED_CELLS))
        recipients.update(compatible_recipients(donor.blood_group, Component.PLASMA))
        candidates = [
            r for r in self.store.requests.find(
                {"status": {"$in": [s.value for s in ACTIVE_REQUEST_STATES]}, "blood_group": {"$in": sorted(recipients)}})
            if can_supply(donor.blood_group, r.blood_group, r.component)
        ]
        interested = {i.request_id for i in self.store.interests.for_donor(donor_id)}
        counts = self.store.interests.count_for_requests([r.id for r in candidates])

        items = []
        for request in candidates:
            distance = self._distance(donor.location, request.location)
            if max_km is not None and distance is not None and distance > max_km:
                continue
            items.append(DonorFeedItem(
                request=request,
                distance_km=distance,
                has_expressed_interest=request.id in interested,
                interested_donors_count=counts.get(request.id, 0),
            ))
        items.sort(key=lambda i: (_distance_key(i.distance_km), URGENCY_RANK[i.request.urgency],
                                  -i.request.created_at.timestamp()))
        return DonorFeed(
            requests=items,
            eligible=self._is_eligible(donor),
            next_eligible_date=self.eligibility.next_eligible_date(donor.last_donation_date, donor.gender),
        )
