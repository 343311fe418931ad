"""Vulnerability scan records produced by the update pipeline."""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from dockgate.db import Base


class VulnerabilityScan(Base):
    """One scanner's result for one image."""

    __tablename__ = "vulnerability_scans"

    id = Column(Integer, primary_key=True, index=True)
    environment_id = Column(Integer, nullable=True, index=True)
    image_id = Column(String, nullable=False, index=True)
    image_name = Column(String, nullable=False)
    scanner = Column(String, nullable=False)  # grype, trivy
    scanned_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    scan_duration_ms = Column(Integer, nullable=False, default=0)

    critical_count = Column(Integer, nullable=False, default=0)
    high_count = Column(Integer, nullable=False, default=0)
    medium_count = Column(Integer, nullable=False, default=0)
    low_count = Column(Integer, nullable=False, default=0)
    negligible_count = Column(Integer, nullable=False, default=0)
    unknown_count = Column(Integer, nullable=False, default=0)

    vulnerabilities = Column(JSON, nullable=False, default=list)
    error = Column(Text, nullable=True)

    def __repr__(self):
        return (
            f"<VulnerabilityScan(image_id={self.image_id[:19]}, scanner={self.scanner}, "
            f"critical={self.critical_count}, high={self.high_count})>"
        )
