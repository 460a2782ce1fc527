"""
Fire-and-forget notifications.

Notifications are stored as in-app messages. Delivery problems are logged and
swallowed: a failed broadcast never undoes the state change that caused it.
"""

import logging

from compatibility import compatible_donors
from eligibility import is_eligible
from schemas import BloodRequest, Notification, OrgType

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, store):
        self.store = store

    def _send(self, recipient_id: str, recipient_type: str, request_id: str, message: str):
        self.store.notifications.insert(Notification(
            recipient_id=recipient_id,
            recipient_type=recipient_type,
            request_id=request_id,
            message=message,
        ))

    def request_created(self, request: BloodRequest) -> int:
        """Alert eligible compatible donors and every other blood bank."""
        try:
            groups = compatible_donors(request.blood_group, request.component)
            msg = (f"{request.urgency.title()} request: {request.units_needed} unit(s) of "
                   f"{request.blood_group} {request.component.replace('_', ' ').lower()} needed.")
            sent = 0
            for donor in self.store.donors.compatible_active(groups):
                if is_eligible(donor):
                    self._send(donor.id, "donor", request.id, msg)
                    sent += 1
            banks = self.store.organizations.find({"org_type": OrgType.BANK.value})
            for bank in banks:
                if bank.id != request.organization_id:
                    self._send(bank.id, "organization", request.id, msg)
                    sent += 1
            logger.info("Request %s broadcast to %d recipient(s)", request.id, sent)
            return sent
        except Exception:
            logger.exception("Broadcast for request %s failed", request.id)
            return 0

    def status_changed(self, request: BloodRequest, note: str = None) -> bool:
        """Tell the requesting organization its request moved."""
        try:
            msg = f"Your {request.blood_group} request is now {request.status}."
            if note:
                msg = f"{msg} {note}"
            self._send(request.organization_id, "organization", request.id, msg)
            return True
        except Exception:
            logger.exception("Status notification for request %s failed", request.id)
            return False
