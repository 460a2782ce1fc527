"""
Typed repositories over the Mongo collections.

Documents go in and come out as the pydantic models from ``schemas``. Every
state change is exposed as a conditional update (``find_one_and_update`` or
``update_many`` with the expected state in the filter) so a caller that lost
a race sees ``None`` / a zero count instead of overwriting someone else's
write.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument, ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from database import create_document, utcnow
from errors import NotFoundError, ValidationError
from schemas import (
    BloodRequest, BloodUnit, Donor, DonorInterest, Notification, Organization,
    RequestStatus, UnitStatus,
)


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class Repository:
    collection_name = None
    model = None
    label = "Document"

    def __init__(self, database):
        self.db = database
        self.collection = database[self.collection_name]

    def _to_model(self, doc):
        if doc is None:
            return None
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return self.model(**doc)

    def _id_filter(self, doc_id: str) -> dict:
        oid = to_object_id(doc_id)
        if oid is None:
            raise NotFoundError(f"{self.label} not found", id=doc_id)
        return {"_id": oid}

    def insert(self, item) -> str:
        return create_document(self.collection_name, item, database=self.db)

    def find_one(self, doc_id: str):
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        return self._to_model(self.collection.find_one({"_id": oid}))

    def get(self, doc_id: str):
        item = self.find_one(doc_id)
        if item is None:
            raise NotFoundError(f"{self.label} not found", id=doc_id)
        return item

    def get_many(self, ids: Iterable[str]) -> Dict[str, object]:
        oids = [oid for oid in (to_object_id(i) for i in ids) if oid is not None]
        if not oids:
            return {}
        return {str(d["_id"]): self._to_model(d) for d in self.collection.find({"_id": {"$in": oids}})}

    def find(self, filter_dict: Optional[dict] = None, sort=None, skip: int = 0, limit: int = 0) -> list:
        cursor = self.collection.find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return [self._to_model(d) for d in cursor]

    def count(self, filter_dict: Optional[dict] = None) -> int:
        return self.collection.count_documents(filter_dict or {})

    def update_where(self, doc_id: str, expected: dict, set_fields: dict = None,
                     unset_fields: Sequence[str] = (), inc: dict = None):
        """Apply an update only if the document still matches ``expected``.

        Returns the updated model, or None when the document changed underneath.
        """
        update = {"$set": dict(set_fields or {}, updated_at=utcnow())}
        if unset_fields:
            update["$unset"] = {f: "" for f in unset_fields}
        if inc:
            update["$inc"] = inc
        doc = self.collection.find_one_and_update(
            dict(self._id_filter(doc_id), **expected), update, return_document=ReturnDocument.AFTER,
        )
        return self._to_model(doc)


class OrganizationRepository(Repository):
    collection_name = "organization"
    model = Organization
    label = "Organization"


class DonorRepository(Repository):
    collection_name = "donor"
    model = Donor
    label = "Donor"

    def record_donation(self, donor_id: str, when: datetime) -> Optional[Donor]:
        return self.update_where(donor_id, {}, {"last_donation_date": when}, inc={"donation_count": 1})

    def compatible_active(self, groups: Sequence[str]) -> List[Donor]:
        return self.find({"blood_group": {"$in": list(groups)}, "is_eligible": True})


class RequestRepository(Repository):
    collection_name = "bloodrequest"
    model = BloodRequest
    label = "Request"

    def transition(self, request_id: str, sources: Sequence[str], target: str,
                   set_fields: dict = None, unset_fields: Sequence[str] = (), expected: dict = None):
        """Compare-and-set on status: move to ``target`` only from one of ``sources``."""
        condition = dict(expected or {}, status={"$in": list(sources)})
        fields = dict(set_fields or {}, status=target)
        return self.update_where(request_id, condition, fields, unset_fields)

    def claim_capacity(self, request: BloodRequest, org_id: str, count: int, set_fields: dict = None):
        """Reserve ``count`` more units of the request's need for ``org_id``.

        The guard on reserved_count/issued_count makes two concurrent claims
        unable to overrun units_needed between them.
        """
        condition = {
            "status": request.status,
            "reserved_by": {"$in": [None, org_id]},
            "issued_count": request.issued_count,
            "reserved_count": {"$lte": request.units_needed - request.issued_count - count},
        }
        fields = dict(set_fields or {}, reserved_by=org_id)
        return self.update_where(request.id, condition, fields, inc={"reserved_count": count})

    def give_back_capacity(self, request_id: str, count: int):
        return self.update_where(request_id, {"reserved_count": {"$gte": count}}, inc={"reserved_count": -count})

    def record_issue(self, request_id: str, org_id: str, count: int):
        return self.update_where(
            request_id,
            {"reserved_by": org_id, "reserved_count": {"$gte": count}},
            inc={"reserved_count": -count, "issued_count": count},
        )

    def clear_reservation_if_empty(self, request_id: str, org_id: str):
        return self.update_where(
            request_id, {"reserved_by": org_id, "reserved_count": 0, "issued_count": 0},
            unset_fields=("reserved_by",),
        )

    def for_organization(self, org_id: str, status=None, urgency=None, skip=0, limit=0):
        query = {"organization_id": org_id}
        if status:
            query["status"] = status
        if urgency:
            query["urgency"] = urgency
        return self.find(query, sort=[("created_at", DESCENDING)], skip=skip, limit=limit)

    def open_requests(self, exclude_org: Optional[str] = None, groups: Optional[Sequence[str]] = None):
        query = {"status": RequestStatus.OPEN.value}
        if exclude_org:
            query["organization_id"] = {"$ne": exclude_org}
        if groups is not None:
            query["blood_group"] = {"$in": list(groups)}
        return self.find(query, sort=[("created_at", DESCENDING)])


class UnitRepository(Repository):
    collection_name = "bloodunit"
    model = BloodUnit
    label = "Unit"

    def claim(self, unit_id: str, org_id: str, request_id: str, now: datetime) -> Optional[BloodUnit]:
        return self.update_where(
            unit_id,
            {"organization_id": org_id, "status": UnitStatus.AVAILABLE.value},
            {"status": UnitStatus.RESERVED.value, "reserved_for": request_id, "reserved_at": now},
        )

    def release(self, unit_id: str, request_id: str) -> Optional[BloodUnit]:
        return self.update_where(
            unit_id,
            {"status": UnitStatus.RESERVED.value, "reserved_for": request_id},
            {"status": UnitStatus.AVAILABLE.value},
            unset_fields=("reserved_for", "reserved_at"),
        )

    def issue(self, unit_id: str, request_id: str, issued_to: str, now: datetime) -> Optional[BloodUnit]:
        return self.update_where(
            unit_id,
            {"status": UnitStatus.RESERVED.value, "reserved_for": request_id},
            {"status": UnitStatus.ISSUED.value, "issued_to": issued_to, "issued_at": now},
        )

    def unissue(self, unit_id: str, request_id: str) -> Optional[BloodUnit]:
        return self.update_where(
            unit_id,
            {"status": UnitStatus.ISSUED.value, "reserved_for": request_id},
            {"status": UnitStatus.RESERVED.value},
            unset_fields=("issued_to", "issued_at"),
        )

    def transition(self, unit_id: str, sources: Sequence[str], target: str, set_fields: dict = None):
        fields = dict(set_fields or {}, status=target)
        return self.update_where(unit_id, {"status": {"$in": list(sources)}}, fields)

    def reserved_for(self, request_id: str) -> List[BloodUnit]:
        return self.find({"status": UnitStatus.RESERVED.value, "reserved_for": request_id})

    def all_reserved(self) -> List[BloodUnit]:
        return self.find({"status": UnitStatus.RESERVED.value})

    def for_organization(self, org_id: str, status=None) -> List[BloodUnit]:
        query = {"organization_id": org_id}
        if status:
            query["status"] = status
        return self.find(query, sort=[("expiry_date", ASCENDING)])

    def expiring(self, org_id: str, now: datetime, cutoff: datetime) -> List[BloodUnit]:
        return self.find(
            {"organization_id": org_id, "status": UnitStatus.AVAILABLE.value,
             "expiry_date": {"$gte": now, "$lte": cutoff}},
            sort=[("expiry_date", ASCENDING)],
        )

    def past_expiry(self, now: datetime, statuses: Sequence[str]) -> List[BloodUnit]:
        return self.find({"status": {"$in": list(statuses)}, "expiry_date": {"$lt": now}})

    def available_stock(self, groups: Sequence[str], component: str, now: datetime,
                        organization_id: Optional[str] = None, exclude_org: Optional[str] = None) -> Dict[str, dict]:
        """AVAILABLE, unexpired unit counts per owning organization."""
        match = {
            "status": UnitStatus.AVAILABLE.value,
            "blood_group": {"$in": list(groups)},
            "component": component,
            "expiry_date": {"$gt": now},
        }
        if organization_id:
            match["organization_id"] = organization_id
        elif exclude_org:
            match["organization_id"] = {"$ne": exclude_org}
        pipeline = [
            {"$match": match},
            {"$group": {"_id": "$organization_id", "available_units": {"$sum": 1},
                        "soonest_expiry": {"$min": "$expiry_date"}}},
        ]
        return {row["_id"]: row for row in self.collection.aggregate(pipeline)}

    def delete(self, unit_id: str, sources: Sequence[str]) -> bool:
        result = self.collection.delete_one(dict(self._id_filter(unit_id), status={"$in": list(sources)}))
        return result.deleted_count == 1


class InterestRepository(Repository):
    collection_name = "donorinterest"
    model = DonorInterest
    label = "Interest"

    def add(self, request_id: str, donor_id: str) -> str:
        if self.collection.find_one({"request_id": request_id, "donor_id": donor_id}):
            raise ValidationError("You have already expressed interest", request_id=request_id, donor_id=donor_id)
        try:
            return self.insert(DonorInterest(request_id=request_id, donor_id=donor_id))
        except DuplicateKeyError:
            raise ValidationError("You have already expressed interest", request_id=request_id, donor_id=donor_id)

    def remove(self, request_id: str, donor_id: str) -> bool:
        return self.collection.delete_one({"request_id": request_id, "donor_id": donor_id}).deleted_count == 1

    def for_request(self, request_id: str) -> List[DonorInterest]:
        return self.find({"request_id": request_id}, sort=[("created_at", DESCENDING)])

    def for_donor(self, donor_id: str, skip: int = 0, limit: int = 0) -> List[DonorInterest]:
        return self.find({"donor_id": donor_id}, sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
                         skip=skip, limit=limit)

    def count_for_requests(self, request_ids: Sequence[str]) -> Dict[str, int]:
        pipeline = [
            {"$match": {"request_id": {"$in": list(request_ids)}}},
            {"$group": {"_id": "$request_id", "count": {"$sum": 1}}},
        ]
        return {row["_id"]: row["count"] for row in self.collection.aggregate(pipeline)}


class NotificationRepository(Repository):
    collection_name = "notification"
    model = Notification
    label = "Notification"

    def for_recipient(self, recipient_id: str, limit: int = 50) -> List[Notification]:
        return self.find({"recipient_id": recipient_id}, sort=[("created_at", DESCENDING)], limit=limit)


class Store:
    """The repositories bound to one database handle."""

    def __init__(self, database):
        self.db = database
        self.organizations = OrganizationRepository(database)
        self.donors = DonorRepository(database)
        self.requests = RequestRepository(database)
        self.units = UnitRepository(database)
        self.interests = InterestRepository(database)
        self.notifications = NotificationRepository(database)
