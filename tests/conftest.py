from datetime import timedelta

import mongomock
import pytest

from database import ensure_indexes, utcnow
from fulfillment import FulfillmentService
from inventory import InventoryService
from matching import MatchingEngine
from repository import Store
from schemas import BloodUnit, Donor, GeoPoint, Organization, OrgType


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def store(db):
    return Store(db)


@pytest.fixture
def fulfillment(store):
    return FulfillmentService(store)


@pytest.fixture
def inventory(store, fulfillment):
    return InventoryService(store, fulfillment)


@pytest.fixture
def matching(store):
    return MatchingEngine(store, timeout=5)


@pytest.fixture
def make_org(store):
    def _make(name="City Hospital", org_type=OrgType.HOSPITAL, location=None, **kwargs):
        org_id = store.organizations.insert(Organization(name=name, org_type=org_type, location=location, **kwargs))
        return store.organizations.get(org_id)
    return _make


@pytest.fixture
def hospital(make_org):
    return make_org("City Hospital", OrgType.HOSPITAL, GeoPoint(lat=12.97, lng=77.59), city="Bengaluru")


@pytest.fixture
def bank(make_org):
    return make_org("Lifeforce Blood Bank", OrgType.BANK, GeoPoint(lat=12.93, lng=77.62), city="Bengaluru")


@pytest.fixture
def make_donor(store):
    def _make(name="Asha", blood_group="O-", **kwargs):
        donor_id = store.donors.insert(Donor(name=name, blood_group=blood_group, **kwargs))
        return store.donors.get(donor_id)
    return _make


@pytest.fixture
def make_unit(store):
    def _make(bank, blood_group="A+", component="WHOLE_BLOOD", expires_in_days=20, **kwargs):
        now = utcnow()
        unit = BloodUnit(
            organization_id=bank.id,
            blood_group=blood_group,
            component=component,
            collection_date=now - timedelta(days=5),
            expiry_date=now + timedelta(days=expires_in_days),
            **kwargs,
        )
        return store.units.get(store.units.insert(unit))
    return _make


@pytest.fixture
def make_request(fulfillment, hospital):
    def _make(blood_group="A+", units_needed=2, org=None, **kwargs):
        data = dict(blood_group=blood_group, units_needed=units_needed, **kwargs)
        return fulfillment.create_request((org or hospital).id, data)
    return _make
