"""Pending container update markers."""

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from dockgate.db import Base


class PendingContainerUpdate(Base):
    """A container known to have a newer image available.

    Markers are written by update checks and cleared once a container has been
    swapped onto its new image.
    """

    __tablename__ = "pending_container_updates"
    __table_args__ = (
        UniqueConstraint("environment_id", "container_id", name="uq_pending_env_container"),
    )

    id = Column(Integer, primary_key=True, index=True)
    environment_id = Column(Integer, nullable=True, index=True)
    container_id = Column(String, nullable=False, index=True)
    container_name = Column(String, nullable=False)
    current_image = Column(String, nullable=False)
    checked_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<PendingContainerUpdate(container={self.container_name}, image={self.current_image})>"
