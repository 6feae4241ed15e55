"""Models package — import all models so metadata.create_all can discover them."""

from access_manager.models.access_request import AccessRequest, AccessStatus
from access_manager.models.audit_log import AuditLog
from access_manager.models.system_setting import SystemSetting

__all__ = ["AccessRequest", "AccessStatus", "AuditLog", "SystemSetting"]
