from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from datetime import datetime, timezone

from rollarr.database import Base

PILOT_ROLLING = "pilotRolling"
FIRST_SEASON_ROLLING = "firstSeasonRolling"
MONITORING_TYPES = (PILOT_ROLLING, FIRST_SEASON_ROLLING)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RollingMonitoredShow(Base):
    """
    Rolling monitoring state for one show.

    A row with plex_user_id = NULL is the master (global) record; per-user rows
    share sonarr_series_id/sonarr_instance_id with it.
    """
    __tablename__ = "rolling_monitored_shows"

    id = Column(Integer, primary_key=True)
    sonarr_series_id = Column(Integer, nullable=False)
    sonarr_instance_id = Column(Integer, nullable=False)
    tvdb_id = Column(String(50), nullable=True, index=True)
    imdb_id = Column(String(50), nullable=True)
    show_title = Column(String(255), nullable=False, index=True)
    monitoring_type = Column(String(32), nullable=False, default=PILOT_ROLLING)

    current_monitored_season = Column(Integer, nullable=False, default=1)
    last_watched_season = Column(Integer, nullable=False, default=0)
    last_watched_episode = Column(Integer, nullable=False, default=0)

    plex_user_id = Column(String(100), nullable=True)
    plex_username = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    last_updated_at = Column(DateTime, default=utcnow)
    last_session_date = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "sonarr_series_id", "sonarr_instance_id", "plex_user_id",
            name="uq_rolling_show_user",
        ),
    )

    @property
    def is_master(self) -> bool:
        return self.plex_user_id is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sonarr_series_id": self.sonarr_series_id,
            "sonarr_instance_id": self.sonarr_instance_id,
            "tvdb_id": self.tvdb_id,
            "imdb_id": self.imdb_id,
            "show_title": self.show_title,
            "monitoring_type": self.monitoring_type,
            "current_monitored_season": self.current_monitored_season,
            "last_watched_season": self.last_watched_season,
            "last_watched_episode": self.last_watched_episode,
            "plex_user_id": self.plex_user_id,
            "plex_username": self.plex_username,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_updated_at": self.last_updated_at,
            "last_session_date": self.last_session_date,
        }

    def __repr__(self):
        return f"<RollingMonitoredShow {self.show_title} S{self.current_monitored_season} user={self.plex_user_id}>"
