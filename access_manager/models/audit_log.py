"""Audit log model — append-only."""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.dialects import mysql

from access_manager.db.base import Base


class AuditLog(Base):
    """Immutable audit trail for every access request transition.

    This table is APPEND-ONLY: no UPDATE or DELETE operations should ever
    be performed on it (enforced at application level).
    """
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(
        DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql"), nullable=False, index=True
    )
    action = Column(String(64), nullable=False, index=True)  # e.g. "user_activated"
    request_id = Column(Integer, ForeignKey("access_requests.id"), nullable=True, index=True)
    details_json = Column(Text, nullable=True)
    performed_by = Column(String(16), default="system", nullable=False)  # system | admin
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text, nullable=True)
