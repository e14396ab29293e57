from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from datetime import datetime, timezone
import json

from rollarr.database import Base


def _now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Config(Base):
    __tablename__ = "config"

    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, nullable=False)
    value = Column(Text)
    module = Column(String, default="core")  # "plex", "sonarr", "webhooks", "core"
    secret = Column(Boolean, default=False)
    data_type = Column(String, default="string")  # string, integer, boolean, json
    updated_at = Column(DateTime, default=_now, onupdate=_now)
    description = Column(String, nullable=True)

    def __repr__(self):
        return f"<Config {self.key}={(self.value or '')[:20]}...>"

    @property
    def typed_value(self):
        """Return value converted according to data_type"""
        if self.value is None:
            return None
        if self.data_type in ("bool", "boolean"):
            return self.value.lower() in ("true", "1", "yes")
        elif self.data_type in ("int", "integer"):
            return int(self.value)
        elif self.data_type == "json":
            return json.loads(self.value)
        return self.value
