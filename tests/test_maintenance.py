from datetime import timedelta

from bson import ObjectId

from database import utcnow
from maintenance import ExpiryScanner, expire_stale_requests, main, reconcile_reservations, run_scan
from reports import overdue_alerts, request_summary
from schemas import Assignment, RequestStatus, ResponderType, UnitStatus


def backdate(db, request_id, hours):
    db["bloodrequest"].update_one({"_id": ObjectId(request_id)},
                                  {"$set": {"created_at": utcnow() - timedelta(hours=hours)}})


def test_expire_stale_requests(db, fulfillment, store, make_request):
    stale = make_request("A+", 1, urgency="CRITICAL")
    fresh = make_request("A+", 1, urgency="LOW")
    backdate(db, stale.id, 8)
    backdate(db, fresh.id, 8)

    assert expire_stale_requests(fulfillment) == [stale.id]
    assert store.requests.get(stale.id).status == RequestStatus.EXPIRED
    assert store.requests.get(fresh.id).status == RequestStatus.OPEN


def test_reconcile_releases_units_of_finished_requests(db, fulfillment, store, bank, make_unit, make_request):
    live = make_request("A+", 1)
    dead = make_request("A+", 1)
    live_unit, dead_unit, orphan_unit = make_unit(bank, "A+"), make_unit(bank, "A+"), make_unit(bank, "A+")
    fulfillment.reserve_units(live.id, bank.id, [live_unit.id])
    fulfillment.reserve_units(dead.id, bank.id, [dead_unit.id])

    # left behind by an interrupted cancel
    db["bloodrequest"].update_one({"_id": ObjectId(dead.id)},
                                  {"$set": {"status": RequestStatus.CANCELLED.value}})
    store.units.update_where(orphan_unit.id, {}, {"status": UnitStatus.RESERVED.value,
                                                  "reserved_for": "5f0000000000000000000000"})

    released = reconcile_reservations(fulfillment)

    assert released == {dead.id: 1, "5f0000000000000000000000": 1}
    assert store.units.get(live_unit.id).status == UnitStatus.RESERVED
    assert store.units.get(dead_unit.id).status == UnitStatus.AVAILABLE
    assert store.units.get(orphan_unit.id).status == UnitStatus.AVAILABLE
    assert reconcile_reservations(fulfillment) == {}


def test_run_scan(db, store, bank, make_unit, make_request):
    stale = make_request("A+", 1, urgency="HIGH")
    backdate(db, stale.id, 30)
    old_unit = make_unit(bank, "O+", expires_in_days=-1)

    result = run_scan(store)

    assert result["expired_requests"] == [stale.id]
    assert result["expired_units"] == [old_unit.id]
    assert result["reconciled"] == {}


def test_scanner_disabled_with_zero_interval(store):
    scanner = ExpiryScanner(store, interval=0)
    scanner.start()
    assert scanner._thread is None
    scanner.stop()


def test_token_command(capsys):
    assert main(["token", "--sub", "abc", "--role", "admin"]) == 0
    assert capsys.readouterr().out.count(".") == 2


# Reports

def test_request_summary(db, fulfillment, make_request, make_donor):
    done = make_request("A+", 1)
    fulfillment.assign(done.id, Assignment(type=ResponderType.DONOR, donor_id=make_donor("Asha", "A+").id))
    fulfillment.fulfill(done.id)
    make_request("A+", 1, urgency="CRITICAL")
    cancelled = make_request("B+", 1)
    fulfillment.cancel(cancelled.id, None)
    make_request("O+", 1)

    summary = request_summary(fulfillment.store)

    assert summary["total"] == 4
    assert summary["fulfilled"] == 1
    assert summary["active"] == 2
    assert summary["critical"] == 1
    assert summary["success_rate"] == 25.0
    assert summary["avg_response_hours"] >= 0


def test_request_summary_empty(store):
    assert request_summary(store)["success_rate"] == 0.0


def test_overdue_alerts(db, store, hospital, make_request):
    critical = make_request("A+", 1, urgency="CRITICAL")
    high = make_request("B+", 1, urgency="HIGH")
    recent = make_request("O+", 1, urgency="CRITICAL")
    low = make_request("O-", 1, urgency="LOW")
    for request in (critical, high, low):
        backdate(db, request.id, 3)

    alerts = overdue_alerts(store)

    assert [a["request_id"] for a in alerts] == [critical.id, high.id]
    assert alerts[0]["organization_name"] == hospital.name
    assert alerts[0]["hours_open"] == 3
    assert recent.id not in {a["request_id"] for a in alerts}
