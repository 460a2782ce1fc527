"""
Admin reports over the request registry.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING

import config
from database import utcnow
from lifecycle import ACTIVE_REQUEST_STATES, URGENCY_RANK
from repository import Store
from schemas import RequestStatus, Urgency

ACTIVE = {"$in": [s.value for s in ACTIVE_REQUEST_STATES]}

# cap on fulfilled requests averaged for the response time
RESPONSE_SAMPLE = 100
ALERT_LIMIT = 50


def request_summary(store: Store) -> Dict[str, Any]:
    total = store.requests.count()
    fulfilled = store.requests.count({"status": RequestStatus.FULFILLED.value})
    active = store.requests.count({"status": ACTIVE})
    critical = store.requests.count({"status": ACTIVE, "urgency": Urgency.CRITICAL.value})

    sample = store.requests.find(
        {"status": RequestStatus.FULFILLED.value, "fulfilled_at": {"$ne": None}},
        sort=[("fulfilled_at", ASCENDING)], limit=RESPONSE_SAMPLE,
    )
    avg_hours = 0.0
    if sample:
        seconds = sum((r.fulfilled_at - r.created_at).total_seconds() for r in sample)
        avg_hours = round(seconds / len(sample) / 3600, 1)

    return {
        "total": total,
        "fulfilled": fulfilled,
        "active": active,
        "critical": critical,
        "avg_response_hours": avg_hours,
        "success_rate": round(fulfilled / total * 100, 1) if total else 0.0,
    }


def overdue_alerts(store: Store, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Active CRITICAL/HIGH requests still waiting after OVERDUE_ALERT_HOURS."""
    now = now or utcnow()
    cutoff = now - timedelta(hours=config.OVERDUE_ALERT_HOURS)
    overdue = store.requests.find({
        "status": ACTIVE,
        "urgency": {"$in": [Urgency.CRITICAL.value, Urgency.HIGH.value]},
        "created_at": {"$lt": cutoff},
    })
    overdue.sort(key=lambda r: (URGENCY_RANK[r.urgency], r.created_at))
    orgs = store.organizations.get_many({r.organization_id for r in overdue})

    alerts = []
    for r in overdue[:ALERT_LIMIT]:
        org = orgs.get(r.organization_id)
        alerts.append({
            "request_id": r.id,
            "blood_group": r.blood_group,
            "units_needed": r.units_needed,
            "urgency": r.urgency,
            "status": r.status,
            "organization_name": org.name if org else None,
            "city": org.city if org else None,
            "created_at": r.created_at,
            "hours_open": round((now - r.created_at).total_seconds() / 3600),
        })
    return alerts
