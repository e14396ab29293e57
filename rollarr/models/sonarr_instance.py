from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func

from rollarr.database import Base


class SonarrInstance(Base):
    """A connected Sonarr server; lookups walk instances in id order"""
    __tablename__ = "sonarr_instances"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    base_url = Column(String(500), nullable=False)
    api_key = Column(String(255), nullable=False)
    is_default = Column(Boolean, default=False)
    enabled = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<SonarrInstance {self.id} {self.name} ({self.base_url})>"
