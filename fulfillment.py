"""
Request lifecycle, donor interest and inventory reservation.

Each public method is one operation against the shared store. Steps that
touch more than one document claim with conditional updates and undo their
own earlier claims when a later one fails, so a caller either gets the full
effect or an error and the original state.
"""

import logging
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError as SchemaError

from compatibility import can_supply, compatible_donors, validate_blood_group
from database import as_utc_naive, utcnow
from errors import (
    AlreadyReservedError, AuthorizationError, InsufficientUnitsError, InvalidStateError,
    NotFoundError, ValidationError,
)
from lifecycle import ACTIVE_REQUEST_STATES, ensure_request_transition, is_past_deadline, request_deadline
from notifications import Notifier
from repository import Store
from schemas import (
    AssignedVia, Assignment, BloodRequest, BloodUnit, OrgType, RequestStatus, ResponderType, UnitStatus,
)

logger = logging.getLogger(__name__)

REQUEST_FIELDS = (
    "blood_group", "component", "units_needed", "urgency", "location", "contact_person",
    "contact_phone", "case_details", "patient_age", "patient_gender", "required_by",
)


class FulfillmentService:
    def __init__(self, store: Store, notifier: Notifier = None, clock=utcnow):
        self.store = store
        self.notifier = notifier or Notifier(store)
        self.clock = clock

    # ------------------------------------
    # Request registry
    # ------------------------------------
    def create_request(self, organization_id: str, data: dict) -> BloodRequest:
        org = self.store.organizations.get(organization_id)
        validate_blood_group(data.get("blood_group"))
        if int(data.get("units_needed") or 0) < 1:
            raise ValidationError("units_needed must be a positive integer")

        fields = {k: v for k, v in data.items() if k in REQUEST_FIELDS and v is not None}
        fields.setdefault("location", org.location)
        if fields.get("required_by"):
            fields["required_by"] = as_utc_naive(fields["required_by"])
        try:
            request = BloodRequest(organization_id=organization_id, status=RequestStatus.OPEN, **fields)
        except SchemaError as e:
            bad = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise ValidationError(f"Invalid request fields: {', '.join(bad)}", fields=bad) from e
        request_id = self.store.requests.insert(request)
        request = self.store.requests.get(request_id)
        logger.info("Request %s opened by %s: %d x %s %s (%s)", request.id, organization_id,
                    request.units_needed, request.blood_group, request.component, request.urgency)
        self.notifier.request_created(request)
        return request

    def get_request(self, request_id: str) -> BloodRequest:
        return self.store.requests.get(request_id)

    def _move(self, request: BloodRequest, target: str, set_fields: dict = None,
              unset_fields: Sequence[str] = (), expected: dict = None) -> BloodRequest:
        ensure_request_transition(request.status, target, request.id)
        updated = self.store.requests.transition(request.id, [request.status], target, set_fields,
                                                 unset_fields, expected)
        if updated is None:
            current = self.store.requests.get(request.id)
            raise InvalidStateError(f"Request changed concurrently and is now {current.status}",
                                    request_id=request.id, status=current.status)
        logger.info("Request %s %s -> %s", request.id, request.status, target)
        return updated

    def assign(self, request_id: str, responder: Assignment) -> BloodRequest:
        request = self.store.requests.get(request_id)
        if request.status != RequestStatus.OPEN:
            raise InvalidStateError("Request is not in OPEN status", request_id=request_id, status=request.status)

        if responder.type == ResponderType.DONOR:
            if not responder.donor_id:
                raise ValidationError("donor_id is required to assign a donor")
            donor = self.store.donors.get(responder.donor_id)
            if not can_supply(donor.blood_group, request.blood_group, request.component):
                raise InvalidStateError(
                    f"Donor group {donor.blood_group} cannot supply {request.blood_group}",
                    request_id=request_id, donor_id=donor.id,
                )
            assignment = Assignment(type=ResponderType.DONOR, donor_id=donor.id)
        else:
            if not responder.organization_id:
                raise ValidationError("organization_id is required to assign a blood bank")
            bank = self.store.organizations.get(responder.organization_id)
            if bank.org_type != OrgType.BANK:
                raise ValidationError("Only blood banks can be assigned", organization_id=bank.id)
            if bank.id == request.organization_id:
                raise ValidationError("A request cannot be assigned to its own organization")
            assignment = Assignment(type=ResponderType.BLOOD_BANK, organization_id=bank.id)

        updated = self._move(request, RequestStatus.ASSIGNED, {
            "assigned_to": assignment.model_dump(), "assigned_via": AssignedVia.MANUAL.value,
        })
        self.notifier.status_changed(updated)
        return updated

    def fulfill(self, request_id: str) -> BloodRequest:
        request = self.store.requests.get(request_id)
        ensure_request_transition(request.status, RequestStatus.FULFILLED, request_id)
        if request.reserved_count:
            raise InvalidStateError("Issue or release the reserved units before fulfilling",
                                    request_id=request_id, reserved_count=request.reserved_count)
        now = self.clock()
        updated = self._move(request, RequestStatus.FULFILLED, {"fulfilled_at": now},
                             expected={"reserved_count": 0})

        assigned = updated.assigned_to
        if assigned and assigned.type == ResponderType.DONOR:
            try:
                if self.store.donors.record_donation(assigned.donor_id, now) is None:
                    logger.warning("Assigned donor %s of request %s no longer exists", assigned.donor_id, request_id)
            except Exception:
                self.store.requests.transition(request_id, [RequestStatus.FULFILLED.value],
                                               RequestStatus.ASSIGNED.value, unset_fields=("fulfilled_at",))
                raise
        self.notifier.status_changed(updated)
        return updated

    def cancel(self, request_id: str, reason: Optional[str] = None) -> BloodRequest:
        request = self.store.requests.get(request_id)
        updated = self._move(
            request, RequestStatus.CANCELLED,
            {"cancelled_at": self.clock(), "cancel_reason": reason},
            unset_fields=("assigned_to", "assigned_via", "reserved_by"),
        )
        held = self.store.units.reserved_for(request_id)
        released = self._release_units(request_id, [u.id for u in held])
        if released:
            lowered = self.store.requests.give_back_capacity(request_id, released)
            if lowered is None:
                logger.error("Cancelled request %s: reserved_count could not drop by %d", request_id, released)
            else:
                updated = lowered
            logger.info("Released %d unit(s) held for cancelled request %s", released, request_id)
        self.notifier.status_changed(updated, note=reason)
        return updated

    def expire(self, request_id: str, now=None) -> BloodRequest:
        now = now or self.clock()
        request = self.store.requests.get(request_id)
        ensure_request_transition(request.status, RequestStatus.EXPIRED, request_id)
        if not is_past_deadline(request, now):
            raise InvalidStateError("Request deadline has not passed", request_id=request_id,
                                    deadline=request_deadline(request).isoformat())
        updated = self._move(request, RequestStatus.EXPIRED, {"expired_at": now})
        self.notifier.status_changed(updated)
        return updated

    # ------------------------------------
    # Donor interest
    # ------------------------------------
    def express_interest(self, request_id: str, donor_id: str) -> int:
        request = self.store.requests.get(request_id)
        self.store.donors.get(donor_id)
        if request.status not in ACTIVE_REQUEST_STATES:
            raise InvalidStateError("This request is no longer active", request_id=request_id, status=request.status)
        self.store.interests.add(request_id, donor_id)
        logger.info("Donor %s interested in request %s", donor_id, request_id)
        return self.store.interests.count({"request_id": request_id})

    def withdraw_interest(self, request_id: str, donor_id: str) -> None:
        request = self.store.requests.get(request_id)
        assigned = request.assigned_to
        if assigned and assigned.type == ResponderType.DONOR and assigned.donor_id == donor_id:
            raise InvalidStateError("The assigned donor cannot withdraw interest", request_id=request_id)
        if not self.store.interests.remove(request_id, donor_id):
            raise NotFoundError("No interest recorded for this request", request_id=request_id, donor_id=donor_id)

    # ------------------------------------
    # Inventory reservation
    # ------------------------------------
    def _check_reservable(self, request: BloodRequest, organization_id: str):
        if request.organization_id == organization_id:
            raise AuthorizationError("An organization cannot reserve units for its own request")
        if request.status == RequestStatus.ASSIGNED:
            assigned = request.assigned_to
            if not assigned or assigned.type != ResponderType.BLOOD_BANK or assigned.organization_id != organization_id:
                raise InvalidStateError("Request is assigned to another responder", request_id=request.id)
        elif request.status != RequestStatus.OPEN:
            raise InvalidStateError("Request is not in a reservable state", request_id=request.id, status=request.status)
        if request.reserved_by not in (None, organization_id):
            raise InvalidStateError("Units were reserved by a different blood bank", request_id=request.id)

    def _check_units(self, request: BloodRequest, organization_id: str, unit_ids: Sequence[str],
                     found: Dict[str, BloodUnit], now) -> None:
        groups = compatible_donors(request.blood_group, request.component)
        unmatched = []
        for unit_id in unit_ids:
            unit = found.get(unit_id)
            if unit is None:
                raise NotFoundError("Unit not found", unit_id=unit_id)
            if unit.organization_id != organization_id:
                raise AuthorizationError("Unit does not belong to your organization", unit_id=unit_id)
            if unit.status != UnitStatus.AVAILABLE:
                raise AlreadyReservedError(f"Unit is {unit.status}, not AVAILABLE", unit_id=unit_id)
            if unit.blood_group not in groups or unit.component != request.component or unit.expiry_date <= now:
                unmatched.append(unit_id)
        if unmatched:
            raise InsufficientUnitsError("Fewer available matching units than selected", unit_ids=unmatched)

    def reserve_units(self, request_id: str, organization_id: str, unit_ids: Sequence[str]) -> BloodRequest:
        unit_ids = list(unit_ids or [])
        if not unit_ids:
            raise ValidationError("Unit IDs array is required")
        if len(set(unit_ids)) != len(unit_ids):
            raise ValidationError("Unit IDs must be distinct")

        request = self.store.requests.get(request_id)
        self._check_reservable(request, organization_id)
        if len(unit_ids) > request.remaining_units:
            raise InsufficientUnitsError(
                f"Request needs {request.remaining_units} more unit(s), {len(unit_ids)} selected",
                request_id=request_id, remaining=request.remaining_units,
            )
        now = self.clock()
        self._check_units(request, organization_id, unit_ids, self.store.units.get_many(unit_ids), now)

        # capacity first: reserved_count never trails the units held for the request
        self._claim_capacity(request, organization_id, len(unit_ids))
        claimed = []
        try:
            for unit_id in unit_ids:
                if self.store.units.claim(unit_id, organization_id, request_id, now) is None:
                    raise AlreadyReservedError("Unit was reserved by someone else", unit_id=unit_id)
                claimed.append(unit_id)
        except Exception:
            self._undo_reservation(request_id, organization_id, len(unit_ids), claimed)
            raise

        logger.info("Bank %s reserved %d unit(s) for request %s", organization_id, len(unit_ids), request_id)
        updated = self.store.requests.get(request_id)
        if request.status != updated.status:
            self.notifier.status_changed(updated)
        return updated

    def _claim_capacity(self, request: BloodRequest, organization_id: str, count: int) -> BloodRequest:
        set_fields = {}
        if request.status == RequestStatus.OPEN:
            ensure_request_transition(request.status, RequestStatus.ASSIGNED, request.id)
            assignment = Assignment(type=ResponderType.BLOOD_BANK, organization_id=organization_id)
            set_fields = {
                "status": RequestStatus.ASSIGNED.value,
                "assigned_to": assignment.model_dump(),
                "assigned_via": AssignedVia.RESERVATION.value,
            }
        updated = self.store.requests.claim_capacity(request, organization_id, count, set_fields)
        if updated is None:
            current = self.store.requests.get(request.id)
            if current.remaining_units < count:
                raise InsufficientUnitsError(
                    f"Request needs {current.remaining_units} more unit(s), {count} selected",
                    request_id=request.id, remaining=current.remaining_units,
                )
            raise InvalidStateError("Request changed while reserving", request_id=request.id, status=current.status)
        return updated

    def _release_units(self, request_id: str, unit_ids: Sequence[str]) -> int:
        released = 0
        for unit_id in unit_ids:
            if self.store.units.release(unit_id, request_id) is not None:
                released += 1
        return released

    def _undo_reservation(self, request_id: str, organization_id: str, count: int, claimed: Sequence[str]):
        released = self._release_units(request_id, claimed)
        # claimed units someone else released already gave their capacity back
        owed = count - len(claimed) + released
        if owed and self.store.requests.give_back_capacity(request_id, owed) is None:
            logger.error("Reservation on request %s rolled back but reserved_count could not drop by %d",
                         request_id, owed)
        self._settle(request_id, organization_id, notify=False)
        logger.warning("Reservation on request %s rolled back (%d unit(s) undone)", request_id, released)

    def release_reservation(self, request_id: str, organization_id: Optional[str] = None,
                            unit_ids: Optional[Sequence[str]] = None) -> int:
        """Return reserved units to AVAILABLE. Already-available units are skipped.

        A bank may only release its own units. ``organization_id`` None means
        a system caller (maintenance jobs).
        """
        request = self.store.requests.get(request_id)
        if organization_id is not None and request.reserved_by not in (None, organization_id):
            raise AuthorizationError("Only the reserving blood bank can release units", request_id=request_id)

        if unit_ids is None:
            targets = [u.id for u in self.store.units.reserved_for(request_id)
                       if organization_id is None or u.organization_id == organization_id]
        else:
            found = self.store.units.get_many(unit_ids)
            targets = []
            for unit_id in unit_ids:
                unit = found.get(unit_id)
                if unit is None:
                    raise NotFoundError("Unit not found", unit_id=unit_id)
                if organization_id is not None and unit.organization_id != organization_id:
                    raise AuthorizationError("Unit does not belong to your organization", unit_id=unit_id)
                if unit.status == UnitStatus.AVAILABLE:
                    continue
                if unit.status != UnitStatus.RESERVED or unit.reserved_for != request_id:
                    raise InvalidStateError("Unit is not reserved for this request", unit_id=unit_id, status=unit.status)
                targets.append(unit_id)

        released = self._release_units(request_id, targets)
        if released:
            self._after_release(request, released)
            logger.info("Released %d unit(s) from request %s", released, request_id)
        return released

    def _after_release(self, request: BloodRequest, count: int):
        updated = self.store.requests.give_back_capacity(request.id, count)
        if updated is None:
            current = self.store.requests.get(request.id)
            logger.error("Request %s released %d unit(s) but holds only %d", request.id, count,
                         current.reserved_count)
            raise InvalidStateError("Reservation count is out of step with the units released",
                                    request_id=request.id, reserved_count=current.reserved_count, released=count)
        if updated.reserved_by:
            self._settle(request.id, updated.reserved_by)

    def _settle(self, request_id: str, bank: str, notify: bool = True):
        """Drop ``bank``'s hold once it has nothing reserved or issued.

        A request the bank took over by reserving goes back to OPEN; a
        hospital's explicit assignment is kept.
        """
        cleared = self.store.requests.clear_reservation_if_empty(request_id, bank)
        if cleared is None or cleared.status != RequestStatus.ASSIGNED:
            return
        if cleared.assigned_via != AssignedVia.RESERVATION:
            return
        reopened = self.store.requests.transition(
            request_id, [RequestStatus.ASSIGNED.value], RequestStatus.OPEN.value,
            unset_fields=("assigned_to", "assigned_via"),
            expected={"reserved_count": 0, "issued_count": 0, "assigned_to.organization_id": bank,
                      "assigned_via": AssignedVia.RESERVATION.value},
        )
        if reopened is not None:
            logger.info("Request %s reopened after bank %s released its units", request_id, bank)
            if notify:
                self.notifier.status_changed(reopened)

    def release_orphaned_units(self, request_id: str) -> int:
        """Free units still pointing at a request that no longer exists."""
        return self._release_units(request_id, [u.id for u in self.store.units.reserved_for(request_id)])

    def issue_units(self, request_id: str, organization_id: str,
                    unit_ids: Optional[Sequence[str]] = None) -> BloodRequest:
        request = self.store.requests.get(request_id)
        if request.status != RequestStatus.ASSIGNED or not request.reserved_by:
            raise InvalidStateError("No units reserved for this request", request_id=request_id, status=request.status)
        if request.reserved_by != organization_id:
            raise AuthorizationError("Units were reserved by a different blood bank", request_id=request_id)

        if unit_ids is None:
            units = self.store.units.reserved_for(request_id)
        else:
            found = self.store.units.get_many(unit_ids)
            units = []
            for unit_id in unit_ids:
                unit = found.get(unit_id)
                if unit is None:
                    raise NotFoundError("Unit not found", unit_id=unit_id)
                if unit.status != UnitStatus.RESERVED or unit.reserved_for != request_id:
                    raise InvalidStateError("Unit is not reserved for this request", unit_id=unit_id, status=unit.status)
                units.append(unit)
        if not units:
            raise InvalidStateError("No units reserved for this request", request_id=request_id)

        now = self.clock()
        issued: List[str] = []
        try:
            for unit in units:
                if self.store.units.issue(unit.id, request_id, request.organization_id, now) is None:
                    raise InvalidStateError("Unit is no longer reserved for this request", unit_id=unit.id)
                issued.append(unit.id)
            updated = self.store.requests.record_issue(request_id, organization_id, len(issued))
            if updated is None:
                raise InvalidStateError("Reservation changed while issuing", request_id=request_id)
        except Exception:
            for unit_id in issued:
                self.store.units.unissue(unit_id, request_id)
            logger.warning("Issue on request %s rolled back (%d unit(s) undone)", request_id, len(issued))
            raise

        logger.info("Bank %s issued %d unit(s) for request %s", organization_id, len(issued), request_id)
        if updated.issued_count >= updated.units_needed and updated.status == RequestStatus.ASSIGNED:
            updated = self._move(updated, RequestStatus.FULFILLED, {"fulfilled_at": now})
            self.notifier.status_changed(updated)
        return updated
