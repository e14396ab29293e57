# tests/conftest.py
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import pytest

from rollarr.database import Base, SessionLocal, engine, _import_models
from rollarr.schemas.plex import PlexSession, PlexShowMetadata

_import_models()


@pytest.fixture(autouse=True)
def fresh_schema():
    """Every test starts with empty tables"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def make_series(series_id: int, title: str, tvdb_id: Optional[int] = None,
                seasons: Optional[Dict[int, Tuple[int, int]]] = None,
                imdb_id: Optional[str] = None) -> dict:
    """Sonarr series dict; seasons maps number -> (totalEpisodeCount, episodeFileCount)"""
    return {
        "id": series_id,
        "title": title,
        "tvdbId": tvdb_id,
        "imdbId": imdb_id,
        "monitored": True,
        "seasons": [
            {
                "seasonNumber": number,
                "monitored": False,
                "statistics": {"totalEpisodeCount": total, "episodeFileCount": files},
            }
            for number, (total, files) in sorted((seasons or {}).items())
        ],
    }


def make_session(title: str, season: int, episode: int, rating_key: str = "100",
                 user_id: str = "1", user: str = "alice", kind: str = "episode") -> PlexSession:
    return PlexSession.model_validate({
        "type": kind,
        "grandparentTitle": title,
        "grandparentKey": f"/library/metadata/{rating_key}",
        "parentIndex": season,
        "index": episode,
        "User": {"id": user_id, "title": user},
    })


class FakeSonarrClient:
    def __init__(self, series: Optional[List[dict]] = None, fail_on: Tuple[str, ...] = ()):
        self.series = series or []
        self.fail_on = fail_on
        self.calls = []

    def _record(self, *call):
        self.calls.append(call)
        if call[0] in self.fail_on:
            raise RuntimeError(f"{call[0]} failed")

    def calls_named(self, name: str) -> list:
        return [c for c in self.calls if c[0] == name]

    async def get_all_series(self):
        self._record("get_all_series")
        return self.series

    async def search_season(self, series_id, season_number):
        self._record("search_season", series_id, season_number)
        return 1

    async def update_season_monitoring(self, series_id, season_number, monitored):
        self._record("update_season_monitoring", series_id, season_number, monitored)

    async def update_series_monitoring(self, series_id, monitored=None, monitor_new_items=None):
        self._record("update_series_monitoring", series_id, monitored, monitor_new_items)


class FakeSonarrManager:
    def __init__(self, clients: Dict[int, FakeSonarrClient]):
        self.clients = clients

    async def get_all_instances(self):
        return [SimpleNamespace(id=instance_id, name=f"sonarr-{instance_id}") for instance_id in sorted(self.clients)]

    def get_instance(self, instance_id):
        return self.clients.get(instance_id)

    def get_instance_id_by_name(self, name):
        return min(self.clients) if self.clients else None


class FakePlexServer:
    def __init__(self, sessions: Optional[List[PlexSession]] = None,
                 guids: Optional[Dict[str, List[str]]] = None, fail_sessions: bool = False):
        self.sessions = sessions or []
        self.guids = guids or {}
        self.fail_sessions = fail_sessions
        self.metadata_calls = []

    async def get_active_sessions(self):
        if self.fail_sessions:
            raise ConnectionError("Plex unreachable")
        return self.sessions

    async def get_show_metadata(self, rating_key, extended=False):
        self.metadata_calls.append(rating_key)
        if rating_key not in self.guids:
            raise LookupError(f"no metadata for {rating_key}")
        guids = self.guids[rating_key]
        return PlexShowMetadata.model_validate({
            "MediaContainer": {
                "guid": guids[0] if guids else None,
                "Guid": [{"id": g} for g in guids[1:]],
            }
        })
