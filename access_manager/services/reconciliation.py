"""Reconciliation engine — applies dashboard outcomes to request state.

The ``mark_*`` / ``activate_user`` methods raise domain errors and are used
directly by the admin paths. ``apply_result`` is the entry point for actor
outcomes (job and webhook); it never raises for bad input, it records the
rejection in the audit log instead. Only ``StorageUnavailable`` escapes.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from access_manager.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from access_manager.models.access_request import AccessRequest, AccessStatus
from access_manager.services.events import (
    EscalationRequired,
    EventQueue,
    JobFailed,
    UserActivated,
    UserExpired,
    UserSnapshot,
)
from access_manager.services.request_store import RequestStore
from access_manager.services.settings_service import AccessPolicy
from access_manager.services.transitions import Trigger, ensure_transition

logger = logging.getLogger("access_manager.reconciliation")

ACTION_ADDED = "added"
ACTION_REMOVED = "removed"
ACTION_JOB_ERROR = "job_error"
MANUAL_ACTIONS = (ACTION_ADDED, ACTION_REMOVED)


@dataclass
class ReconcileOutcome:
    applied: bool
    request_id: Optional[int] = None
    needs_manual_intervention: bool = False
    error: Optional[str] = None


class ReconciliationEngine:
    """Translate add/remove outcomes into store mutations plus audit entries."""

    def __init__(self, store: RequestStore, policy: AccessPolicy, events: Optional[EventQueue] = None):
        self.store = store
        self.policy = policy
        self.events = events if events is not None else EventQueue()

    def _load(self, request_id: int) -> AccessRequest:
        request = self.store.get_by_id(request_id)
        if request is None:
            raise NotFoundError(f"Access request {request_id} not found")
        return request

    def _activate(self, request: AccessRequest, slot_number: Optional[int]) -> None:
        expires_at = self.store.clock() + timedelta(days=self.policy.access_duration_days)
        self.store.activate(request, slot_number, expires_at)
        self.events.emit(UserActivated(user=UserSnapshot.of(request), slot_number=slot_number))

    def activate_user(self, request_id: int, slot_number: Optional[int]) -> AccessRequest:
        request = self._load(request_id)
        ensure_transition(request.status, AccessStatus.active, Trigger.automation)
        self._activate(request, slot_number)
        self.store.audit(
            "user_activated",
            request.id,
            {"slotNumber": slot_number, "expiresAt": request.expires_at.isoformat()},
        )
        return request

    def mark_user_expired(self, request_id: int) -> AccessRequest:
        request = self._load(request_id)
        ensure_transition(request.status, AccessStatus.expired, Trigger.automation)
        self.store.mark_expired(request)
        self.store.audit("user_expired", request.id, {"reason": "time_limit"})
        if not request.expiry_notification_sent:
            self.events.emit(UserExpired(user=UserSnapshot.of(request)))
            self.store.mark_expiry_notification_sent(request)
        return request

    def mark_user_removed(
        self,
        request_id: int,
        reason: str = "manual",
        trigger: Trigger = Trigger.admin,
        performed_by: str = "admin",
    ) -> AccessRequest:
        request = self._load(request_id)
        ensure_transition(request.status, AccessStatus.removed, trigger)
        self.store.mark_removed(request)
        self.store.audit("user_removed", request.id, {"reason": reason}, performed_by=performed_by)
        return request

    def mark_automation_failed(self, request_id: int, error: str) -> bool:
        """Count a failure; returns True once manual intervention is needed.

        The escalation itself (``failed`` status for pending requests, the
        ``automation_max_failures`` audit entry and the admin alert) happens
        only on the failure that crosses the threshold. Later failures of a
        request that is already escalated keep returning True quietly.
        """
        request = self._load(request_id)
        previous_attempts = request.automation_attempts or 0
        attempts = self.store.record_automation_failure(request, error)
        self.store.audit(
            "automation_failed",
            request.id,
            {"attempts": attempts, "error": error},
            success=False,
            error_message=error,
        )
        threshold = self.policy.max_automation_attempts
        if attempts < threshold:
            return False
        if previous_attempts >= threshold and request.status != AccessStatus.pending:
            logger.info("Request %s still awaiting manual intervention (%s failures)", request.id, attempts)
            return True

        # An active request whose removal keeps failing stays active.
        if request.status == AccessStatus.pending:
            ensure_transition(request.status, AccessStatus.failed, Trigger.escalation)
            self.store.mark_failed(request)
        self.store.audit(
            "automation_max_failures",
            request.id,
            {"attempts": attempts, "lastError": error, "status": request.status.value},
            success=False,
            error_message=error,
        )
        logger.warning(
            "Request %s (%s) reached %s automation failures; manual intervention required",
            request.id, request.email, attempts,
        )
        self.events.emit(
            EscalationRequired(user=UserSnapshot.of(request), attempts=attempts, last_error=error)
        )
        return True

    def mark_manually_processed(self, request_id: int, action: str, performed_by: str = "admin") -> AccessRequest:
        """Admin override that bypasses the dashboard automation."""
        if action not in MANUAL_ACTIONS:
            raise ValidationError(f"Action must be one of: {', '.join(MANUAL_ACTIONS)}")
        request = self._load(request_id)
        previous = request.status.value
        details = {"action": action, "previousStatus": previous}

        if action == ACTION_ADDED:
            ensure_transition(request.status, AccessStatus.active, Trigger.manual)
            slot_number = self.store.count(AccessStatus.active) + 1
            self._activate(request, slot_number)
            details["slotNumber"] = slot_number
        else:
            ensure_transition(request.status, AccessStatus.removed, Trigger.manual)
            self.store.mark_removed(request)

        self.store.audit("manual_intervention", request.id, details, performed_by=performed_by)
        return request

    def apply_result(
        self,
        action: str,
        request_id: Optional[int] = None,
        success: bool = False,
        error: Optional[str] = None,
        slot_number: Optional[int] = None,
    ) -> ReconcileOutcome:
        """Apply one reported automation outcome."""
        if action == ACTION_JOB_ERROR:
            message = error or "Unknown job error"
            self.store.audit("job_error", None, {"error": message}, success=False, error_message=message)
            self.events.emit(JobFailed(error=message))
            return ReconcileOutcome(applied=True)

        try:
            if request_id is None:
                raise ValidationError("Result has no request id")
            if action == ACTION_ADDED:
                if success:
                    if slot_number is None:
                        slot_number = self.store.count(AccessStatus.active) + 1
                    self.activate_user(request_id, slot_number)
                    return ReconcileOutcome(applied=True, request_id=request_id)
                needs_manual = self.mark_automation_failed(request_id, error or "Unknown error")
                return ReconcileOutcome(True, request_id, needs_manual, error)
            if action == ACTION_REMOVED:
                if success:
                    self.mark_user_expired(request_id)
                    return ReconcileOutcome(applied=True, request_id=request_id)
                needs_manual = self.mark_automation_failed(request_id, error or "Unknown error")
                return ReconcileOutcome(True, request_id, needs_manual, error)
            raise ValidationError(f"Unknown automation action '{action}'")
        except (NotFoundError, InvalidTransitionError, ValidationError) as e:
            logger.warning("Rejected %s result for request %s: %s", action, request_id, e.message)
            self.store.audit(
                "reconciliation_rejected",
                None if isinstance(e, NotFoundError) else request_id,
                {"action": action, "requestId": request_id, "reportedSuccess": success, "reportedError": error},
                success=False,
                error_message=e.message,
            )
            return ReconcileOutcome(applied=False, request_id=request_id, error=e.message)
