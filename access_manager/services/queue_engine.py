"""Queue engine — submission, status, capacity and promotion selection."""

import enum
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from access_manager.core.exceptions import ConflictError, NotFoundError, ValidationError
from access_manager.models.access_request import AccessRequest, AccessStatus
from access_manager.schemas.schemas import AdminRequestView, QueueStatusOut, QueueSummary
from access_manager.services.request_store import RequestStore
from access_manager.services.settings_service import AccessPolicy
from access_manager.services.transitions import Trigger, ensure_transition

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 100
SLOTS_FREED_PER_WEEK = 3.5

STATUS_MESSAGES = {
    AccessStatus.expired: "Your access has expired. You can request access again.",
    AccessStatus.removed: "Your access was removed. You can request access again.",
    AccessStatus.failed: "There was an issue processing your request. Please try again or contact support.",
}


def estimate_wait_time(position: int) -> str:
    weeks = math.ceil(position / SLOTS_FREED_PER_WEEK)
    if weeks <= 1:
        return "~1 week or less"
    return f"~{weeks} weeks"


def days_remaining(expires_at: Optional[datetime], now: datetime) -> int:
    """Whole days left, a partial day counting as a full one."""
    if expires_at is None:
        return 0
    seconds = (expires_at - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def validate_submission(email: Optional[str], full_name: Optional[str]):
    email = (email or "").strip()
    full_name = (full_name or "").strip()
    if not email or len(email) > MAX_EMAIL_LENGTH or not EMAIL_RE.match(email):
        raise ValidationError("A valid email address is required")
    if not full_name or len(full_name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Full name is required (max {MAX_NAME_LENGTH} characters)")
    return email, full_name


class SubmissionOutcome(str, enum.Enum):
    created = "created"
    resubmitted = "resubmitted"
    already_active = "already_active"


@dataclass
class SubmissionResult:
    outcome: SubmissionOutcome
    request_id: int
    email: str
    status: AccessStatus
    queue_position: Optional[int] = None
    estimated_wait: Optional[str] = None
    expires_at: Optional[datetime] = None
    days_remaining: Optional[int] = None

    @property
    def is_new(self) -> bool:
        return self.outcome in (SubmissionOutcome.created, SubmissionOutcome.resubmitted)


@dataclass
class AccessStatusView:
    status: AccessStatus
    queue_position: Optional[int] = None
    estimated_wait: Optional[str] = None
    created_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    days_remaining: Optional[int] = None
    slot_number: Optional[int] = None
    message: Optional[str] = None


class QueueEngine:
    """Decision logic over the request store. Holds no state between calls."""

    def __init__(self, store: RequestStore, policy: AccessPolicy):
        self.store = store
        self.policy = policy

    @property
    def now(self) -> datetime:
        return self.store.clock()

    def submit_access_request(self, email: str, full_name: str) -> SubmissionResult:
        email, full_name = validate_submission(email, full_name)
        existing = self.store.get_by_email(email)

        if existing is None:
            ensure_transition(None, AccessStatus.pending, Trigger.submission)
            request = self.store.insert_pending(email, full_name)
            self.store.audit("request_submitted", request.id, {"email": email, "fullName": full_name})
            return self._queued(request, SubmissionOutcome.created)

        if existing.status == AccessStatus.active:
            return SubmissionResult(
                outcome=SubmissionOutcome.already_active,
                request_id=existing.id,
                email=existing.email,
                status=existing.status,
                expires_at=existing.expires_at,
                days_remaining=days_remaining(existing.expires_at, self.now),
            )

        if existing.status == AccessStatus.pending:
            position = self.store.queue_position(existing)
            raise ConflictError(
                "Request already pending",
                data={"queuePosition": position, "estimatedWait": estimate_wait_time(position)},
            )

        ensure_transition(existing.status, AccessStatus.pending, Trigger.resubmission)
        previous = existing.status.value
        request = self.store.reset_to_pending(existing, full_name)
        self.store.audit(
            "request_resubmitted",
            request.id,
            {"email": email, "fullName": full_name, "previousStatus": previous},
        )
        return self._queued(request, SubmissionOutcome.resubmitted)

    def _queued(self, request: AccessRequest, outcome: SubmissionOutcome) -> SubmissionResult:
        position = self.store.queue_position(request)
        return SubmissionResult(
            outcome=outcome,
            request_id=request.id,
            email=request.email,
            status=request.status,
            queue_position=position,
            estimated_wait=estimate_wait_time(position),
        )

    def get_access_status(self, email: str) -> AccessStatusView:
        request = self.store.get_by_email((email or "").strip())
        if request is None:
            raise NotFoundError("No access request found for this email")

        if request.status == AccessStatus.pending:
            position = self.store.queue_position(request)
            return AccessStatusView(
                status=request.status,
                queue_position=position,
                estimated_wait=estimate_wait_time(position),
                created_at=request.created_at,
            )

        if request.status == AccessStatus.active:
            return AccessStatusView(
                status=request.status,
                activated_at=request.activated_at,
                expires_at=request.expires_at,
                days_remaining=days_remaining(request.expires_at, self.now),
                slot_number=request.slot_number,
            )

        return AccessStatusView(status=request.status, message=STATUS_MESSAGES.get(request.status, "Unknown status"))

    def compute_available_slots(self, active_count: Optional[int] = None, expired_this_run: int = 0) -> int:
        """Free slots; the job passes its pre-run count and this run's expirations."""
        if active_count is None:
            active_count = self.store.count(AccessStatus.active)
        return self.policy.max_slots - active_count + expired_this_run

    def select_promotion_candidates(self, available_slots: int) -> List[AccessRequest]:
        return self.store.oldest_pending(max(0, available_slots))

    def get_queue_status(self) -> QueueStatusOut:
        now = self.now
        active_count = self.store.count(AccessStatus.active)
        pending = self.store.list_by_status(AccessStatus.pending, order="created_at")
        active = self.store.list_by_status(AccessStatus.active, order="expires_at")
        recent = self.store.recently_ended(now - timedelta(days=7), limit=10)

        summary = QueueSummary(
            total_slots=self.policy.max_slots,
            active_slots=active_count,
            available_slots=max(0, self.policy.max_slots - active_count),
            pending_requests=len(pending),
            expiring_today=self.store.count_active_expiring_between(None, now + timedelta(days=1)),
            expiring_tomorrow=self.store.count_active_expiring_between(
                now + timedelta(days=1), now + timedelta(days=2)
            ),
        )
        return QueueStatusOut(
            summary=summary,
            active=[to_admin_view(r, now) for r in active],
            pending=[
                to_admin_view(r, now, queue_position=position)
                for r, position in zip(pending, queue_positions(pending))
            ],
            recently_expired=[to_admin_view(r, now) for r in recent],
        )


def queue_positions(pending: List[AccessRequest]) -> List[int]:
    """Positions for pending requests already sorted by ``created_at``.

    Same rule as ``RequestStore.queue_position``: 1 + the number of pending
    requests created strictly earlier, so equal timestamps share a position.
    """
    positions: List[int] = []
    for i, request in enumerate(pending):
        if i and request.created_at == pending[i - 1].created_at:
            positions.append(positions[-1])
        else:
            positions.append(i + 1)
    return positions


def to_admin_view(request: AccessRequest, now: datetime, queue_position: Optional[int] = None) -> AdminRequestView:
    return AdminRequestView(
        id=request.id,
        email=request.email,
        full_name=request.full_name,
        status=request.status.value,
        created_at=request.created_at,
        activated_at=request.activated_at,
        expires_at=request.expires_at,
        removed_at=request.removed_at,
        days_remaining=days_remaining(request.expires_at, now) if request.expires_at else None,
        slot_number=request.slot_number,
        automation_attempts=request.automation_attempts or 0,
        last_automation_error=request.last_automation_error,
        queue_position=queue_position,
    )
