"""Runtime-tunable system settings."""

from sqlalchemy import Column, String, DateTime, func

from access_manager.db.base import Base


class SystemSetting(Base):
    """Key-value system settings."""
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(String(500), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
