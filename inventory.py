"""
Blood unit intake and housekeeping for blood banks.

Reservation and issue moves are not made here; they belong to
``FulfillmentService`` so a unit never leaves RESERVED without the request's
counters following it.
"""

import logging
from datetime import timedelta
from typing import List, Optional

import config
from compatibility import validate_blood_group
from database import as_utc_naive, utcnow
from errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from fulfillment import FulfillmentService
from lifecycle import RESERVATION_MANAGED, ensure_unit_transition
from repository import Store
from schemas import BloodUnit, Component, OrgType, UnitStatus

logger = logging.getLogger(__name__)

INTAKE_STATUSES = (UnitStatus.AVAILABLE, UnitStatus.TESTED, UnitStatus.QUARANTINED)
EXPIRABLE_STATUSES = (UnitStatus.AVAILABLE, UnitStatus.TESTED, UnitStatus.QUARANTINED, UnitStatus.RESERVED)


class InventoryService:
    def __init__(self, store: Store, fulfillment: FulfillmentService = None, clock=utcnow):
        self.store = store
        self.fulfillment = fulfillment or FulfillmentService(store, clock=clock)
        self.clock = clock

    def _require_bank(self, organization_id: str):
        org = self.store.organizations.get(organization_id)
        if org.org_type != OrgType.BANK:
            raise AuthorizationError("Only blood banks can manage inventory", organization_id=organization_id)
        return org

    def add_unit(self, organization_id: str, data: dict) -> BloodUnit:
        self._require_bank(organization_id)
        validate_blood_group(data.get("blood_group"))
        status = data.get("status") or UnitStatus.AVAILABLE
        if status not in INTAKE_STATUSES:
            raise ValidationError(f"New units cannot start as {status}", status=status)
        collected, expires = as_utc_naive(data["collection_date"]), as_utc_naive(data["expiry_date"])
        if expires <= collected:
            raise ValidationError("expiry_date must be after collection_date")

        unit = BloodUnit(
            organization_id=organization_id,
            blood_group=data["blood_group"],
            component=data.get("component") or Component.WHOLE_BLOOD,
            status=status,
            barcode=data.get("barcode"),
            collection_date=collected,
            expiry_date=expires,
            donor_id=data.get("donor_id"),
        )
        unit_id = self.store.units.insert(unit)
        logger.info("Unit %s (%s %s) added to bank %s", unit_id, unit.blood_group, unit.component, organization_id)
        return self.store.units.get(unit_id)

    def list_units(self, organization_id: str, status: Optional[str] = None) -> List[BloodUnit]:
        return self.store.units.for_organization(organization_id, status)

    def expiring_units(self, organization_id: str, days: int = config.EXPIRING_SOON_DAYS, now=None) -> List[BloodUnit]:
        now = now or self.clock()
        return self.store.units.expiring(organization_id, now, now + timedelta(days=days))

    def _free(self, unit: BloodUnit):
        try:
            self.fulfillment.release_reservation(unit.reserved_for, None, [unit.id])
        except NotFoundError:
            self.fulfillment.release_orphaned_units(unit.reserved_for)

    def transition_unit(self, unit_id: str, target: str, organization_id: Optional[str] = None) -> BloodUnit:
        """Move a unit through testing/quarantine/expiry. ``organization_id`` None is an admin."""
        unit = self.store.units.get(unit_id)
        if organization_id is not None and unit.organization_id != organization_id:
            raise AuthorizationError("Unit does not belong to your organization", unit_id=unit_id)
        if target in RESERVATION_MANAGED:
            raise InvalidStateError(f"Units become {target} only through reservation", unit_id=unit_id)

        if unit.status == UnitStatus.RESERVED:
            if target != UnitStatus.EXPIRED:
                raise InvalidStateError("Release the reservation first", unit_id=unit_id)
            self._free(unit)
            unit = self.store.units.get(unit_id)

        ensure_unit_transition(unit.status, target, unit_id)
        updated = self.store.units.transition(unit_id, [unit.status], target)
        if updated is None:
            current = self.store.units.get(unit_id)
            raise InvalidStateError(f"Unit changed concurrently and is now {current.status}", unit_id=unit_id)
        logger.info("Unit %s %s -> %s", unit_id, unit.status, target)
        return updated

    def expire_units(self, now=None) -> List[str]:
        """Mark every unit past its expiry date EXPIRED, releasing reserved ones first."""
        now = now or self.clock()
        expired = []
        for unit in self.store.units.past_expiry(now, [s.value for s in EXPIRABLE_STATUSES]):
            if unit.status == UnitStatus.RESERVED:
                self._free(unit)
                unit = self.store.units.get(unit.id)
            if self.store.units.transition(unit.id, [unit.status], UnitStatus.EXPIRED.value) is not None:
                expired.append(unit.id)
        if expired:
            logger.info("Expired %d unit(s)", len(expired))
        return expired

    def purge_unit(self, unit_id: str) -> None:
        unit = self.store.units.get(unit_id)
        if unit.status == UnitStatus.RESERVED:
            raise InvalidStateError("Reserved units cannot be purged", unit_id=unit_id)
        sources = [s.value for s in UnitStatus if s != UnitStatus.RESERVED]
        if not self.store.units.delete(unit_id, sources):
            raise InvalidStateError("Unit changed while purging", unit_id=unit_id)
        logger.warning("Unit %s (%s) purged", unit_id, unit.status)
