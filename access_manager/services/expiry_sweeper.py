"""Expiry sweeper — finds active requests past or near the end of their window."""

import logging
from datetime import timedelta
from typing import List, Optional

from access_manager.core.exceptions import NotFoundError
from access_manager.models.access_request import AccessRequest
from access_manager.services.events import EventQueue, ExpiryWarningDue, UserSnapshot
from access_manager.services.request_store import RequestStore
from access_manager.services.settings_service import AccessPolicy

logger = logging.getLogger("access_manager.sweeper")


class ExpirySweeper:
    def __init__(self, store: RequestStore, policy: AccessPolicy, events: Optional[EventQueue] = None):
        self.store = store
        self.policy = policy
        self.events = events if events is not None else EventQueue()

    def get_expired_users(self) -> List[AccessRequest]:
        """Active requests whose window ended strictly before now; no grace period."""
        return self.store.expired_active(self.store.clock())

    def get_users_needing_expiry_warning(self) -> List[AccessRequest]:
        cutoff = self.store.clock() + timedelta(hours=self.policy.expiry_warning_hours)
        return self.store.active_expiring_before(cutoff, unwarned_only=True)

    def mark_expiry_warning_sent(self, request_id: int) -> AccessRequest:
        request = self.store.get_by_id(request_id)
        if request is None:
            raise NotFoundError(f"Access request {request_id} not found")
        if not request.expiry_warning_sent:
            self.store.mark_expiry_warning_sent(request)
        return request

    def queue_expiry_warnings(self) -> int:
        """Emit one warning per request that has not been warned yet."""
        due = self.get_users_needing_expiry_warning()
        for request in due:
            self.events.emit(ExpiryWarningDue(user=UserSnapshot.of(request)))
            self.mark_expiry_warning_sent(request.id)
        if due:
            logger.info("Queued %d expiry warning(s)", len(due))
        return len(due)
