"""
Administrative maintenance: expiry sweeps and reservation reconciliation.

The jobs only go through FulfillmentService / InventoryService, so they
respect the same state machines and conditional updates as the API. They run
from the admin routes, from the optional background scan started with the
app, or from the command line:

    python maintenance.py expire-requests
    python maintenance.py reconcile
    python maintenance.py token --sub <id> --role organization
"""

import argparse
import logging
import sys
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import config
import database
from auth import ROLES, create_access_token
from database import ensure_indexes, utcnow
from errors import BloodLinkError
from fulfillment import FulfillmentService
from inventory import InventoryService
from lifecycle import TERMINAL_REQUEST_STATES, is_past_deadline
from repository import Store
from schemas import RequestStatus

logger = logging.getLogger(__name__)


def expire_stale_requests(service: FulfillmentService, now: Optional[datetime] = None) -> List[str]:
    """Expire every OPEN request whose deadline has passed."""
    now = now or service.clock()
    expired = []
    for request in service.store.requests.find({"status": RequestStatus.OPEN.value}):
        if not is_past_deadline(request, now):
            continue
        try:
            service.expire(request.id, now)
        except BloodLinkError as e:
            # picked up by a responder since the query ran
            logger.info("Request %s not expired: %s", request.id, e.message)
            continue
        expired.append(request.id)
    if expired:
        logger.info("Expired %d stale request(s)", len(expired))
    return expired


def expire_outdated_units(inventory: InventoryService, now: Optional[datetime] = None) -> List[str]:
    return inventory.expire_units(now)


def reconcile_reservations(service: FulfillmentService) -> Dict[str, int]:
    """Release units still RESERVED for requests that are gone or finished."""
    held = defaultdict(list)
    for unit in service.store.units.all_reserved():
        held[unit.reserved_for].append(unit.id)

    released = {}
    for request_id, unit_ids in held.items():
        request = service.store.requests.find_one(request_id)
        if request is None:
            count = service.release_orphaned_units(request_id)
        elif request.status in TERMINAL_REQUEST_STATES:
            count = service.release_reservation(request_id, None, unit_ids)
        else:
            continue
        if count:
            released[request_id] = count
            logger.warning("Reconciled %d unit(s) held for %s request %s", count,
                           request.status if request else "missing", request_id)
    return released


def run_scan(store: Store, now: Optional[datetime] = None) -> dict:
    service = FulfillmentService(store)
    inventory = InventoryService(store, service)
    now = now or utcnow()
    return {
        "expired_requests": expire_stale_requests(service, now),
        "expired_units": expire_outdated_units(inventory, now),
        "reconciled": reconcile_reservations(service),
    }


class ExpiryScanner:
    """Daemon thread running ``run_scan`` every ``interval`` seconds."""

    def __init__(self, store: Store, interval: int = config.EXPIRY_SCAN_INTERVAL):
        self.store = store
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        if self.interval <= 0 or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="expiry-scan", daemon=True)
        self._thread.start()
        logger.info("Expiry scan every %ds", self.interval)

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval)
            self._thread = None

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                run_scan(self.store)
            except Exception:
                logger.exception("Expiry scan failed, retrying in %ds", self.interval)


def main(argv=None):
    ap = argparse.ArgumentParser(description="BloodLink maintenance jobs")
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("expire-requests", help="expire OPEN requests past their deadline")
    sub.add_parser("expire-units", help="mark units past their expiry date EXPIRED")
    sub.add_parser("reconcile", help="release units held for finished or missing requests")
    sub.add_parser("ensure-indexes", help="create the collection indexes")
    token = sub.add_parser("token", help="mint an access token")
    token.add_argument("--sub", required=True, help="donor or organization id")
    token.add_argument("--role", choices=ROLES, required=True)
    token.add_argument("--minutes", type=int, default=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    args = ap.parse_args(argv)

    config.configure_logging()

    if args.command == "token":
        print(create_access_token({"sub": args.sub, "role": args.role}, timedelta(minutes=args.minutes)))
        return 0

    db = database.db
    if db is None:
        print("Database not configured; set DATABASE_URL and DATABASE_NAME.", file=sys.stderr)
        return 1
    store = Store(db)
    service = FulfillmentService(store)

    if args.command == "expire-requests":
        print(f"Expired {len(expire_stale_requests(service))} request(s).")
    elif args.command == "expire-units":
        print(f"Expired {len(expire_outdated_units(InventoryService(store, service)))} unit(s).")
    elif args.command == "reconcile":
        released = reconcile_reservations(service)
        print(f"Released {sum(released.values())} unit(s) across {len(released)} request(s).")
    elif args.command == "ensure-indexes":
        ensure_indexes(db)
        print(f"Indexes ensured on {db.name}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
