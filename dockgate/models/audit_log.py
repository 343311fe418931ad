"""Audit log entries."""

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from dockgate.db import Base


class AuditLog(Base):
    """Record of a state-changing action performed by Dockgate."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String, nullable=False, index=True)  # update
    entity_type = Column(String, nullable=False)  # container
    entity_id = Column(String, nullable=True)
    entity_name = Column(String, nullable=True)
    environment_id = Column(Integer, nullable=True, index=True)
    triggered_by = Column(String, nullable=False, default="user")
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    def __repr__(self):
        return f"<AuditLog(action={self.action}, entity={self.entity_type}:{self.entity_name})>"
