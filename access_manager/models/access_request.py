"""Access request model."""

import enum

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Enum
from sqlalchemy.dialects import mysql

from access_manager.db.base import Base

# Microsecond precision keeps creation order strict for queue positions.
PreciseDateTime = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


class AccessStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    expired = "expired"
    removed = "removed"
    failed = "failed"


class AccessRequest(Base):
    """One row per distinct email; resubmissions reset the row in place."""
    __tablename__ = "access_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(254), unique=True, nullable=False, index=True)
    full_name = Column(String(100), nullable=False)
    status = Column(
        Enum(AccessStatus, name="access_status", native_enum=False, length=16),
        default=AccessStatus.pending,
        nullable=False,
        index=True,
    )
    created_at = Column(PreciseDateTime, nullable=False, index=True)
    activated_at = Column(PreciseDateTime, nullable=True)
    expires_at = Column(PreciseDateTime, nullable=True, index=True)
    removed_at = Column(PreciseDateTime, nullable=True)
    slot_number = Column(Integer, nullable=True)  # display ordinal, not a reservation
    automation_attempts = Column(Integer, default=0, nullable=False)
    last_automation_error = Column(Text, nullable=True)
    expiry_warning_sent = Column(Boolean, default=False, nullable=False)
    expiry_notification_sent = Column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<AccessRequest id={self.id} email={self.email!r} status={self.status.value}>"
