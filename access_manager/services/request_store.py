"""Request store — durable access request table plus the audit trail.

Every write commits immediately, so subsequent reads in the same process see
it. Driver-level failures surface as ``StorageUnavailable``; a duplicate
email surfaces as ``ConflictError``.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, text
from sqlalchemy.orm import Session

from access_manager.core.clock import Clock, utcnow
from access_manager.db.errors import guarded
from access_manager.models.access_request import AccessRequest, AccessStatus
from access_manager.services.audit_service import audit_service

_ORDER_COLUMNS = {
    "created_at": AccessRequest.created_at,
    "expires_at": AccessRequest.expires_at,
    "removed_at": AccessRequest.removed_at,
}

_guarded = guarded("An access request for this email already exists")


class RequestStore:
    """Table-level operations on access requests."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    # ---- reads ----

    @_guarded
    def get_by_email(self, email: str) -> Optional[AccessRequest]:
        return self.db.query(AccessRequest).filter(AccessRequest.email == email).first()

    @_guarded
    def get_by_id(self, request_id: int) -> Optional[AccessRequest]:
        return self.db.get(AccessRequest, request_id)

    @_guarded
    def count(self, status: AccessStatus) -> int:
        return (
            self.db.query(func.count(AccessRequest.id))
            .filter(AccessRequest.status == status)
            .scalar()
        ) or 0

    @_guarded
    def list_by_status(
        self,
        status: AccessStatus,
        order: str = "created_at",
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[AccessRequest]:
        column = _ORDER_COLUMNS[order]
        query = self.db.query(AccessRequest).filter(AccessRequest.status == status)
        query = query.order_by(column.desc() if descending else column.asc(), AccessRequest.id.asc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    @_guarded
    def queue_position(self, request: AccessRequest) -> int:
        """1 + number of pending requests created strictly earlier."""
        earlier = (
            self.db.query(func.count(AccessRequest.id))
            .filter(
                AccessRequest.status == AccessStatus.pending,
                AccessRequest.created_at < request.created_at,
            )
            .scalar()
        ) or 0
        return earlier + 1

    def oldest_pending(self, limit: int) -> List[AccessRequest]:
        if limit <= 0:
            return []
        return self.list_by_status(AccessStatus.pending, order="created_at", limit=limit)

    @_guarded
    def expired_active(self, now: datetime) -> List[AccessRequest]:
        return (
            self.db.query(AccessRequest)
            .filter(
                AccessRequest.status == AccessStatus.active,
                AccessRequest.expires_at < now,
            )
            .order_by(AccessRequest.expires_at.asc())
            .all()
        )

    @_guarded
    def active_expiring_before(self, cutoff: datetime, unwarned_only: bool = False) -> List[AccessRequest]:
        query = self.db.query(AccessRequest).filter(
            AccessRequest.status == AccessStatus.active,
            AccessRequest.expires_at < cutoff,
        )
        if unwarned_only:
            query = query.filter(AccessRequest.expiry_warning_sent.is_(False))
        return query.order_by(AccessRequest.expires_at.asc()).all()

    @_guarded
    def count_active_expiring_between(self, start: Optional[datetime], end: datetime) -> int:
        query = self.db.query(func.count(AccessRequest.id)).filter(
            AccessRequest.status == AccessStatus.active,
            AccessRequest.expires_at < end,
        )
        if start is not None:
            query = query.filter(AccessRequest.expires_at >= start)
        return query.scalar() or 0

    @_guarded
    def recently_ended(self, since: datetime, limit: int = 10) -> List[AccessRequest]:
        return (
            self.db.query(AccessRequest)
            .filter(
                AccessRequest.status.in_([AccessStatus.expired, AccessStatus.removed]),
                AccessRequest.removed_at > since,
            )
            .order_by(AccessRequest.removed_at.desc())
            .limit(limit)
            .all()
        )

    @_guarded
    def ping(self) -> bool:
        self.db.execute(text("SELECT 1"))
        return True

    # ---- writes ----

    @_guarded
    def insert_pending(self, email: str, full_name: str) -> AccessRequest:
        request = AccessRequest(
            email=email,
            full_name=full_name,
            status=AccessStatus.pending,
            created_at=self.clock(),
            automation_attempts=0,
            expiry_warning_sent=False,
            expiry_notification_sent=False,
        )
        self.db.add(request)
        self.db.commit()
        self.db.refresh(request)
        return request

    @_guarded
    def reset_to_pending(self, request: AccessRequest, full_name: str) -> AccessRequest:
        """Re-initialize every field except identity."""
        request.full_name = full_name
        request.status = AccessStatus.pending
        request.created_at = self.clock()
        request.activated_at = None
        request.expires_at = None
        request.removed_at = None
        request.slot_number = None
        request.automation_attempts = 0
        request.last_automation_error = None
        request.expiry_warning_sent = False
        request.expiry_notification_sent = False
        self.db.commit()
        return request

    @_guarded
    def activate(self, request: AccessRequest, slot_number: Optional[int], expires_at: datetime) -> AccessRequest:
        request.status = AccessStatus.active
        request.activated_at = self.clock()
        request.expires_at = expires_at
        request.removed_at = None
        request.slot_number = slot_number
        self.db.commit()
        return request

    @_guarded
    def mark_expired(self, request: AccessRequest) -> AccessRequest:
        request.status = AccessStatus.expired
        request.removed_at = self.clock()
        self.db.commit()
        return request

    @_guarded
    def mark_removed(self, request: AccessRequest) -> AccessRequest:
        request.status = AccessStatus.removed
        request.removed_at = self.clock()
        self.db.commit()
        return request

    @_guarded
    def record_automation_failure(self, request: AccessRequest, error: str) -> int:
        request.automation_attempts = (request.automation_attempts or 0) + 1
        request.last_automation_error = error
        self.db.commit()
        return request.automation_attempts

    @_guarded
    def mark_failed(self, request: AccessRequest) -> AccessRequest:
        request.status = AccessStatus.failed
        self.db.commit()
        return request

    @_guarded
    def mark_expiry_warning_sent(self, request: AccessRequest) -> AccessRequest:
        request.expiry_warning_sent = True
        self.db.commit()
        return request

    @_guarded
    def mark_expiry_notification_sent(self, request: AccessRequest) -> AccessRequest:
        request.expiry_notification_sent = True
        self.db.commit()
        return request

    # ---- audit ----

    @_guarded
    def audit(
        self,
        action: str,
        request_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        performed_by: str = "system",
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> None:
        audit_service.log(
            self.db,
            action=action,
            request_id=request_id,
            details=details,
            performed_by=performed_by,
            success=success,
            error_message=error_message,
            clock=self.clock,
        )
