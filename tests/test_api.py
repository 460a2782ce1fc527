from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from database import utcnow
from main import app, get_db


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_header(sub, role):
    return {"Authorization": f"Bearer {create_access_token({'sub': sub, 'role': role})}"}


@pytest.fixture
def admin():
    return auth_header("admin-1", "admin")


def test_root(client):
    assert client.get("/").json() == {"message": "BloodLink API running"}


def test_requires_token(client):
    assert client.get("/requests").status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.get("/requests", headers=bad).status_code == 401
    assert client.get("/requests", headers=auth_header("x", "superuser")).status_code == 401


def test_admin_registers_organizations_and_donors(client, admin):
    res = client.post("/organizations", json={"name": "City Hospital", "org_type": "HOSPITAL",
                                              "email": "desk@cityhospital.org", "city": "Pune"}, headers=admin)
    assert res.status_code == 200
    org = res.json()
    assert org["org_type"] == "HOSPITAL"

    res = client.post("/donors", json={"name": "Asha", "blood_group": "O-", "gender": "FEMALE"}, headers=admin)
    assert res.status_code == 200
    donor = res.json()

    org_header = auth_header(org["id"], "organization")
    assert client.post("/donors", json={"name": "X", "blood_group": "A+"}, headers=org_header).status_code == 403

    res = client.get(f"/donors/{donor['id']}/eligibility", headers=org_header)
    assert res.json()["eligible"] is True


def test_end_to_end_bank_fulfillment(client, hospital, bank, make_unit, admin):
    """Hospital asks for 2 x A+, a bank with A+ and O- stock reserves and issues."""
    h = auth_header(hospital.id, "organization")
    b = auth_header(bank.id, "organization")
    a_pos, o_neg = make_unit(bank, "A+"), make_unit(bank, "O-")

    res = client.post("/requests", json={"blood_group": "A+", "units_needed": 2, "urgency": "HIGH"}, headers=h)
    assert res.status_code == 201
    request_id = res.json()["id"]

    matches = client.get(f"/requests/{request_id}/matches", headers=h).json()
    assert matches["blood_banks"][0]["organization_id"] == bank.id
    assert matches["blood_banks"][0]["can_fulfill"] is True

    incoming = client.get("/org/incoming", headers=b).json()
    assert [i["request"]["id"] for i in incoming] == [request_id]

    res = client.post(f"/requests/{request_id}/reserve", json={"unit_ids": [a_pos.id, o_neg.id]}, headers=b)
    assert res.status_code == 200
    assert res.json()["status"] == "ASSIGNED"

    res = client.post(f"/requests/{request_id}/issue", json={}, headers=b)
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "FULFILLED"
    assert body["issued_count"] == 2

    units = client.get("/inventory", params={"status": "ISSUED"}, headers=b).json()
    assert {u["id"] for u in units} == {a_pos.id, o_neg.id}

    summary = client.get("/admin/summary", headers=admin).json()
    assert summary["fulfilled"] == 1


def test_domain_errors_map_to_status_codes(client, hospital, bank, make_unit):
    h = auth_header(hospital.id, "organization")
    b = auth_header(bank.id, "organization")
    request_id = client.post("/requests", json={"blood_group": "A+", "units_needed": 1}, headers=h).json()["id"]
    units = [make_unit(bank, "A+"), make_unit(bank, "A+")]

    res = client.post(f"/requests/{request_id}/reserve", json={"unit_ids": [u.id for u in units]}, headers=b)
    assert res.status_code == 409
    assert res.json()["error"] == "insufficient_units"

    res = client.post("/requests", json={"blood_group": "Q+", "units_needed": 1}, headers=h)
    assert res.status_code == 422
    assert res.json()["error"] == "validation_error"

    res = client.get("/requests/5f0000000000000000000000", headers=h)
    assert res.status_code == 404
    assert res.json()["error"] == "not_found"

    res = client.post(f"/requests/{request_id}/fulfill", headers=h)
    assert res.status_code == 409
    assert res.json()["error"] == "invalid_state"


def test_request_owner_checks(client, hospital, make_org):
    h = auth_header(hospital.id, "organization")
    other = make_org("Other Hospital")
    request_id = client.post("/requests", json={"blood_group": "B+", "units_needed": 1}, headers=h).json()["id"]

    intruder = auth_header(other.id, "organization")
    assert client.post(f"/requests/{request_id}/cancel", json={}, headers=intruder).status_code == 403
    assert client.get(f"/requests/{request_id}/matches", headers=intruder).status_code == 403

    res = client.post(f"/requests/{request_id}/cancel", json={"reason": "resolved"}, headers=h)
    assert res.json()["status"] == "CANCELLED"
    assert [r["id"] for r in client.get("/requests", headers=h).json()] == [request_id]
    assert client.get("/requests", headers=intruder).json() == []


def test_donor_interest_and_assignment(client, hospital, make_donor):
    h = auth_header(hospital.id, "organization")
    donor = make_donor("Asha", "O+")
    d = auth_header(donor.id, "donor")
    request_id = client.post("/requests", json={"blood_group": "A+", "units_needed": 1}, headers=h).json()["id"]

    feed = client.get("/donor/requests", headers=d).json()
    assert [i["request"]["id"] for i in feed["requests"]] == [request_id]

    res = client.post(f"/requests/{request_id}/interest", headers=d)
    assert res.status_code == 201
    assert res.json()["interested_donors_count"] == 1
    assert client.post(f"/requests/{request_id}/interest", headers=d).status_code == 422

    matches = client.get(f"/requests/{request_id}/matches", headers=h).json()
    assert [m["donor_id"] for m in matches["donors"]] == [donor.id]

    res = client.post(f"/requests/{request_id}/assign", json={"type": "DONOR", "donor_id": donor.id}, headers=h)
    assert res.json()["status"] == "ASSIGNED"
    assert client.delete(f"/requests/{request_id}/interest", headers=d).status_code == 409

    res = client.post(f"/requests/{request_id}/fulfill", headers=h)
    assert res.json()["status"] == "FULFILLED"
    notes = client.get("/notifications", headers=h).json()
    assert any("FULFILLED" in n["message"] for n in notes)


def test_donor_profile_rules(client, make_donor, admin):
    donor = make_donor("Asha", "O+")
    d = auth_header(donor.id, "donor")
    res = client.put(f"/donors/{donor.id}", json={"city": "Mysuru"}, headers=d)
    assert res.json()["city"] == "Mysuru"
    assert client.put(f"/donors/{donor.id}", json={"is_eligible": False}, headers=d).status_code == 403
    res = client.put(f"/donors/{donor.id}", json={"is_eligible": False}, headers=admin)
    assert res.json()["is_eligible"] is False
    other = make_donor("Bala", "A+")
    assert client.get(f"/donors/{other.id}", headers=d).status_code == 403


def test_inventory_routes(client, bank, hospital, admin):
    b = auth_header(bank.id, "organization")
    now = utcnow()
    unit = {
        "blood_group": "B-",
        "component": "PLATELETS",
        "status": "QUARANTINED",
        "collection_date": now.isoformat(),
        "expiry_date": (now + timedelta(days=5)).isoformat(),
    }
    res = client.post("/inventory", json=unit, headers=b)
    assert res.status_code == 201
    unit_id = res.json()["id"]

    res = client.put(f"/inventory/{unit_id}/status", json={"status": "TESTED"}, headers=b)
    assert res.json()["status"] == "TESTED"
    res = client.put(f"/inventory/{unit_id}/status", json={"status": "ISSUED"}, headers=b)
    assert res.status_code == 409

    h = auth_header(hospital.id, "organization")
    assert client.post("/inventory", json=unit, headers=h).status_code == 403

    assert client.delete(f"/inventory/{unit_id}", headers=b).status_code == 403
    assert client.delete(f"/inventory/{unit_id}", headers=admin).json() == {"deleted": True}


def test_admin_maintenance_routes(client, admin, hospital):
    h = auth_header(hospital.id, "organization")
    assert client.post("/admin/reconcile", headers=h).status_code == 403
    assert client.post("/admin/expire-requests", headers=admin).json() == {"expired": []}
    assert client.post("/admin/expire-units", headers=admin).json() == {"expired": []}
    assert client.post("/admin/reconcile", headers=admin).json() == {"released": {}, "total": 0}
    assert client.get("/admin/alerts", headers=admin).json() == {"count": 0, "alerts": []}


def test_negative_patient_age_is_rejected(client, hospital):
    h = auth_header(hospital.id, "organization")
    res = client.post("/requests", json={"blood_group": "A+", "units_needed": 1, "patient_age": -1}, headers=h)
    assert res.status_code == 422


def test_donor_history(client, hospital, make_donor, make_request):
    donor = make_donor("Asha", "O+")
    d = auth_header(donor.id, "donor")
    ids = [make_request("A+", 1).id for _ in range(3)]
    for request_id in ids:
        assert client.post(f"/requests/{request_id}/interest", headers=d).status_code == 201

    first = client.get("/donor/history", params={"page": 1, "limit": 2}, headers=d).json()
    assert first["total"] == 3
    assert first["pages"] == 2
    assert len(first["requests"]) == 2
    assert first["requests"][0]["organization_name"] == hospital.name

    second = client.get("/donor/history", params={"page": 2, "limit": 2}, headers=d).json()
    seen = [item["request"]["id"] for item in first["requests"] + second["requests"]]
    assert sorted(seen) == sorted(ids)

    h = auth_header(hospital.id, "organization")
    assert client.get("/donor/history", headers=h).status_code == 403
