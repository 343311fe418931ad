"""Settings model for database-first configuration."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from dockgate.db import Base


class Setting(Base):
    """Application settings stored in database.

    Environment-scoped overrides use keys of the form ``env:<id>:<key>``.
    """

    __tablename__ = "settings"

    key = Column(String, primary_key=True, index=True)
    value = Column(String, nullable=False)
    category = Column(String, nullable=False, default="general")  # scanner, docker, updates
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Setting(key={self.key}, category={self.category})>"
