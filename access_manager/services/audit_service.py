"""Audit service — append-only audit trail for every transition."""

import json
from typing import Optional, Any, Dict

from sqlalchemy.orm import Session

from access_manager.core.clock import Clock, utcnow
from access_manager.db.errors import storage_guard
from access_manager.models.audit_log import AuditLog


class AuditService:
    """Records immutable audit log entries for access request events."""

    @staticmethod
    def log(
        db: Session,
        action: str,
        request_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        performed_by: str = "system",
        success: bool = True,
        error_message: Optional[str] = None,
        clock: Clock = utcnow,
    ) -> AuditLog:
        """Write a single audit log record.

        Args:
            action: e.g. "request_submitted", "user_activated", "automation_failed"
            performed_by: "system" or "admin"

        This method commits immediately to ensure audit is never lost.
        """
        entry = AuditLog(
            timestamp=clock(),
            action=action,
            request_id=request_id,
            details_json=json.dumps(details, default=str) if details else None,
            performed_by=performed_by,
            success=success,
            error_message=error_message,
        )
        with storage_guard(db, "audit log"):
            db.add(entry)
            db.commit()
        return entry

    @staticmethod
    def query_logs(
        db: Session,
        action: Optional[str] = None,
        request_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        """Query audit logs with filters and pagination, newest first."""
        query = db.query(AuditLog)

        if action:
            query = query.filter(AuditLog.action == action)
        if request_id:
            query = query.filter(AuditLog.request_id == request_id)

        with storage_guard(db, "audit query"):
            total = query.count()
            logs = (
                query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )

        return {
            "logs": logs,
            "total": total,
            "page": page,
            "page_size": page_size,
        }


audit_service = AuditService()
