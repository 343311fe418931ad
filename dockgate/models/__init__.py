"""Database models for Dockgate."""

from dockgate.models.setting import Setting
from dockgate.models.vulnerability_scan import VulnerabilityScan
from dockgate.models.pending_update import PendingContainerUpdate
from dockgate.models.audit_log import AuditLog

__all__ = [
    "Setting",
    "VulnerabilityScan",
    "PendingContainerUpdate",
    "AuditLog",
]
