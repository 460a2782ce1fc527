import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

import config
import database
from auth import Actor, get_current_actor, require_role
from eligibility import CooldownEligibility
from errors import BloodLinkError
from fulfillment import FulfillmentService
from inventory import InventoryService
from maintenance import ExpiryScanner, expire_outdated_units, expire_stale_requests, reconcile_reservations
from matching import MatchingEngine
from reports import overdue_alerts, request_summary
from repository import Store
from schemas import (
    Assignment, BloodRequest, Component, Donor, Gender, GeoPoint, Organization, OrgType, Schema,
    UnitStatus, Urgency, BLOOD_GROUP_PATTERN,
)

logger = logging.getLogger(__name__)


# ------------------------------------
# App Setup
# ------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    scanner = None
    if database.db is not None:
        database.ensure_indexes(database.db)
        scanner = ExpiryScanner(Store(database.db))
        scanner.start()
    yield
    if scanner is not None:
        scanner.stop()


app = FastAPI(title="BloodLink API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BloodLinkError)
async def bloodlink_error_handler(request: Request, exc: BloodLinkError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


# ------------------------------------
# Dependencies
# ------------------------------------
def get_db():
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return database.db


def get_store(db=Depends(get_db)) -> Store:
    return Store(db)


def get_fulfillment(store: Store = Depends(get_store)) -> FulfillmentService:
    return FulfillmentService(store)


def get_inventory(fulfillment: FulfillmentService = Depends(get_fulfillment)) -> InventoryService:
    return InventoryService(fulfillment.store, fulfillment)


def get_matching(store: Store = Depends(get_store)) -> MatchingEngine:
    return MatchingEngine(store, timeout=config.EXTERNAL_CALL_TIMEOUT)


# ------------------------------------
# Payloads
# ------------------------------------
class OrganizationPayload(Schema):
    name: str
    org_type: OrgType = OrgType.HOSPITAL
    city: Optional[str] = None
    state: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    location: Optional[GeoPoint] = None


class DonorPayload(Schema):
    name: str
    blood_group: str = Field(..., pattern=BLOOD_GROUP_PATTERN)
    gender: Optional[Gender] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    location: Optional[GeoPoint] = None
    last_donation_date: Optional[datetime] = None


class DonorUpdatePayload(Schema):
    phone: Optional[str] = None
    city: Optional[str] = None
    location: Optional[GeoPoint] = None
    # admin only
    is_eligible: Optional[bool] = None
    last_donation_date: Optional[datetime] = None


class RequestPayload(Schema):
    blood_group: str
    component: Component = Component.WHOLE_BLOOD
    units_needed: int
    urgency: Urgency = Urgency.MEDIUM
    location: Optional[GeoPoint] = None
    contact_person: Optional[str] = None
    contact_phone: Optional[str] = None
    case_details: Optional[str] = None
    patient_age: Optional[int] = Field(None, ge=0)
    patient_gender: Optional[Gender] = None
    required_by: Optional[datetime] = None


class CancelPayload(BaseModel):
    reason: Optional[str] = None


class UnitIdsPayload(BaseModel):
    unit_ids: Optional[List[str]] = None


class UnitPayload(Schema):
    blood_group: str
    component: Component = Component.WHOLE_BLOOD
    status: UnitStatus = UnitStatus.AVAILABLE
    barcode: Optional[str] = None
    collection_date: datetime
    expiry_date: datetime
    donor_id: Optional[str] = None


class UnitStatusPayload(Schema):
    status: UnitStatus


# Ownership helpers

def owned_request(fulfillment: FulfillmentService, request_id: str, actor: Actor) -> BloodRequest:
    request = fulfillment.get_request(request_id)
    if not actor.is_admin and request.organization_id != actor.organization_id:
        raise HTTPException(status_code=403, detail="Not allowed")
    return request


def require_self_or_admin(actor: Actor, donor_id: str):
    if not actor.is_admin and actor.donor_id != donor_id:
        raise HTTPException(status_code=403, detail="Not allowed")


# ------------------------------------
# Health & Test
# ------------------------------------
@app.get("/")
def read_root():
    return {"message": "BloodLink API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": None,
        "collections": [],
    }
    db = database.db
    if db is not None:
        response["database_name"] = db.name
        try:
            response["collections"] = db.list_collection_names()
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


@app.get("/me")
def me(actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    profile = None
    if actor.role == "donor":
        profile = store.donors.find_one(actor.id)
    elif actor.role == "organization":
        profile = store.organizations.find_one(actor.id)
    return {"id": actor.id, "role": actor.role, "profile": profile}


# ------------------------------------
# Organizations
# ------------------------------------
@app.post("/organizations", response_model=Organization)
def create_organization(payload: OrganizationPayload, actor: Actor = Depends(get_current_actor),
                        store: Store = Depends(get_store)):
    require_role(actor, ["admin"])
    org_id = store.organizations.insert(Organization(**payload.model_dump()))
    return store.organizations.get(org_id)


@app.get("/organizations", response_model=List[Organization])
def list_organizations(org_type: Optional[OrgType] = None, city: Optional[str] = None,
                       actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    q = {}
    if org_type:
        q["org_type"] = org_type.value
    if city:
        q["city"] = city
    return store.organizations.find(q, sort=[("name", 1)])


@app.get("/organizations/{org_id}", response_model=Organization)
def get_organization(org_id: str, actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    return store.organizations.get(org_id)


# ------------------------------------
# Donors
# ------------------------------------
@app.post("/donors", response_model=Donor)
def create_donor(payload: DonorPayload, actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    require_role(actor, ["admin"])
    donor_id = store.donors.insert(Donor(**payload.model_dump()))
    return store.donors.get(donor_id)


@app.get("/donors/{donor_id}", response_model=Donor)
def get_donor(donor_id: str, actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    # organizations see donors through matches and interests
    if actor.role == "donor":
        require_self_or_admin(actor, donor_id)
    return store.donors.get(donor_id)


@app.put("/donors/{donor_id}", response_model=Donor)
def update_donor(donor_id: str, payload: DonorUpdatePayload, actor: Actor = Depends(get_current_actor),
                 store: Store = Depends(get_store)):
    require_self_or_admin(actor, donor_id)
    fields = payload.model_dump(exclude_none=True)
    if not actor.is_admin and ({"is_eligible", "last_donation_date"} & fields.keys()):
        raise HTTPException(status_code=403, detail="Only admins can change eligibility")
    store.donors.get(donor_id)
    return store.donors.update_where(donor_id, {}, fields)


@app.get("/donors/{donor_id}/eligibility")
def donor_eligibility(donor_id: str, actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    donor = store.donors.get(donor_id)
    rule = CooldownEligibility()
    return {
        "donor_id": donor.id,
        "eligible": rule.is_eligible(donor),
        "next_eligible_date": rule.next_eligible_date(donor.last_donation_date, donor.gender),
        "donation_count": donor.donation_count,
    }


@app.get("/donor/requests")
def donor_feed(max_km: Optional[float] = None, actor: Actor = Depends(get_current_actor),
               matching: MatchingEngine = Depends(get_matching)):
    require_role(actor, ["donor"])
    return matching.requests_for_donor(actor.id, max_km)


@app.get("/donor/history")
def donor_history(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                  actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    """Requests the donor has expressed interest in, newest interest first."""
    require_role(actor, ["donor"])
    total = store.interests.count({"donor_id": actor.id})
    interests = store.interests.for_donor(actor.id, skip=(page - 1) * limit, limit=limit)
    requests = store.requests.get_many([i.request_id for i in interests])
    orgs = store.organizations.get_many({r.organization_id for r in requests.values()})
    history = []
    for interest in interests:
        request = requests.get(interest.request_id)
        if request is None:
            continue
        org = orgs.get(request.organization_id)
        history.append({
            "request": request,
            "organization_name": org.name if org else None,
            "interested_at": interest.created_at,
        })
    return {"requests": history, "total": total, "page": page, "pages": (total + limit - 1) // limit}


# ------------------------------------
# Blood Requests
# ------------------------------------
@app.post("/requests", response_model=BloodRequest, status_code=201)
def create_request(payload: RequestPayload, actor: Actor = Depends(get_current_actor),
                   fulfillment: FulfillmentService = Depends(get_fulfillment)):
    require_role(actor, ["organization"])
    return fulfillment.create_request(actor.id, payload.model_dump())


@app.get("/requests", response_model=List[BloodRequest])
def list_requests(status: Optional[str] = None, urgency: Optional[str] = None, skip: int = 0, limit: int = 50,
                  actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    require_role(actor, ["organization", "admin"])
    if actor.is_admin:
        q = {}
        if status:
            q["status"] = status
        if urgency:
            q["urgency"] = urgency
        return store.requests.find(q, sort=[("created_at", -1)], skip=skip, limit=limit)
    return store.requests.for_organization(actor.id, status, urgency, skip=skip, limit=limit)


@app.get("/requests/{request_id}", response_model=BloodRequest)
def get_request(request_id: str, actor: Actor = Depends(get_current_actor),
                fulfillment: FulfillmentService = Depends(get_fulfillment)):
    return fulfillment.get_request(request_id)


@app.get("/requests/{request_id}/matches")
def request_matches(request_id: str, actor: Actor = Depends(get_current_actor),
                    fulfillment: FulfillmentService = Depends(get_fulfillment),
                    matching: MatchingEngine = Depends(get_matching)):
    owned_request(fulfillment, request_id, actor)
    return matching.find_matches(request_id)


@app.post("/requests/{request_id}/assign", response_model=BloodRequest)
def assign_request(request_id: str, payload: Assignment, actor: Actor = Depends(get_current_actor),
                   fulfillment: FulfillmentService = Depends(get_fulfillment)):
    owned_request(fulfillment, request_id, actor)
    return fulfillment.assign(request_id, payload)


@app.post("/requests/{request_id}/fulfill", response_model=BloodRequest)
def fulfill_request(request_id: str, actor: Actor = Depends(get_current_actor),
                    fulfillment: FulfillmentService = Depends(get_fulfillment)):
    owned_request(fulfillment, request_id, actor)
    return fulfillment.fulfill(request_id)


@app.post("/requests/{request_id}/cancel", response_model=BloodRequest)
def cancel_request(request_id: str, payload: CancelPayload, actor: Actor = Depends(get_current_actor),
                   fulfillment: FulfillmentService = Depends(get_fulfillment)):
    owned_request(fulfillment, request_id, actor)
    return fulfillment.cancel(request_id, payload.reason)


@app.post("/requests/{request_id}/expire", response_model=BloodRequest)
def expire_request(request_id: str, actor: Actor = Depends(get_current_actor),
                   fulfillment: FulfillmentService = Depends(get_fulfillment)):
    require_role(actor, ["admin"])
    return fulfillment.expire(request_id)


@app.post("/requests/{request_id}/interest", status_code=201)
def express_interest(request_id: str, actor: Actor = Depends(get_current_actor),
                     fulfillment: FulfillmentService = Depends(get_fulfillment)):
    require_role(actor, ["donor"])
    count = fulfillment.express_interest(request_id, actor.id)
    return {"request_id": request_id, "interested_donors_count": count}


@app.delete("/requests/{request_id}/interest")
def withdraw_interest(request_id: str, actor: Actor = Depends(get_current_actor),
                      fulfillment: FulfillmentService = Depends(get_fulfillment)):
    require_role(actor, ["donor"])
    fulfillment.withdraw_interest(request_id, actor.id)
    return {"withdrawn": True}


@app.post("/requests/{request_id}/reserve", response_model=BloodRequest)
def reserve_units(request_id: str, payload: UnitIdsPayload, actor: Actor = Depends(get_current_actor),
                  fulfillment: FulfillmentService = Depends(get_fulfillment)):
    require_role(actor, ["organization"])
    return fulfillment.reserve_units(request_id, actor.id, payload.unit_ids)


@app.post("/requests/{request_id}/release")
def release_units(request_id: str, payload: UnitIdsPayload, actor: Actor = Depends(get_current_actor),
                  fulfillment: FulfillmentService = Depends(get_fulfillment)):
    require_role(actor, ["organization", "admin"])
    released = fulfillment.release_reservation(request_id, actor.organization_id, payload.unit_ids)
    return {"released": released, "request": fulfillment.get_request(request_id)}


@app.post("/requests/{request_id}/issue", response_model=BloodRequest)
def issue_units(request_id: str, payload: UnitIdsPayload, actor: Actor = Depends(get_current_actor),
                fulfillment: FulfillmentService = Depends(get_fulfillment)):
    require_role(actor, ["organization"])
    return fulfillment.issue_units(request_id, actor.id, payload.unit_ids)


@app.get("/org/incoming")
def incoming_requests(actor: Actor = Depends(get_current_actor), matching: MatchingEngine = Depends(get_matching)):
    require_role(actor, ["organization"])
    return matching.incoming_requests(actor.id)


# ------------------------------------
# Inventory
# ------------------------------------
@app.get("/inventory")
def list_inventory(status: Optional[UnitStatus] = None, actor: Actor = Depends(get_current_actor),
                   inventory: InventoryService = Depends(get_inventory)):
    require_role(actor, ["organization"])
    return inventory.list_units(actor.id, status.value if status else None)


@app.post("/inventory", status_code=201)
def add_unit(payload: UnitPayload, actor: Actor = Depends(get_current_actor),
             inventory: InventoryService = Depends(get_inventory)):
    require_role(actor, ["organization"])
    return inventory.add_unit(actor.id, payload.model_dump())


@app.get("/inventory/expiring")
def expiring_inventory(days: int = config.EXPIRING_SOON_DAYS, actor: Actor = Depends(get_current_actor),
                       inventory: InventoryService = Depends(get_inventory)):
    require_role(actor, ["organization"])
    return inventory.expiring_units(actor.id, days)


@app.put("/inventory/{unit_id}/status")
def update_unit_status(unit_id: str, payload: UnitStatusPayload, actor: Actor = Depends(get_current_actor),
                       inventory: InventoryService = Depends(get_inventory)):
    require_role(actor, ["organization", "admin"])
    return inventory.transition_unit(unit_id, payload.status, actor.organization_id)


@app.delete("/inventory/{unit_id}")
def purge_unit(unit_id: str, actor: Actor = Depends(get_current_actor),
               inventory: InventoryService = Depends(get_inventory)):
    require_role(actor, ["admin"])
    inventory.purge_unit(unit_id)
    return {"deleted": True}


# ------------------------------------
# Admin
# ------------------------------------
@app.get("/admin/summary")
def admin_summary(actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    require_role(actor, ["admin"])
    return request_summary(store)


@app.get("/admin/alerts")
def admin_alerts(actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    require_role(actor, ["admin"])
    alerts = overdue_alerts(store)
    return {"count": len(alerts), "alerts": alerts}


@app.post("/admin/expire-requests")
def admin_expire_requests(actor: Actor = Depends(get_current_actor),
                          fulfillment: FulfillmentService = Depends(get_fulfillment)):
    require_role(actor, ["admin"])
    return {"expired": expire_stale_requests(fulfillment)}


@app.post("/admin/expire-units")
def admin_expire_units(actor: Actor = Depends(get_current_actor),
                       inventory: InventoryService = Depends(get_inventory)):
    require_role(actor, ["admin"])
    return {"expired": expire_outdated_units(inventory)}


@app.post("/admin/reconcile")
def admin_reconcile(actor: Actor = Depends(get_current_actor),
                    fulfillment: FulfillmentService = Depends(get_fulfillment)):
    require_role(actor, ["admin"])
    released = reconcile_reservations(fulfillment)
    return {"released": released, "total": sum(released.values())}


# ------------------------------------
# Notifications
# ------------------------------------
@app.get("/notifications")
def my_notifications(limit: int = 50, actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    return store.notifications.for_recipient(actor.id, limit)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
