import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from rollarr.database import SessionLocal
from rollarr.models.sonarr_instance import SonarrInstance
from rollarr.services.sonarr_client import SonarrClient, SonarrError


logger = logging.getLogger(__name__)


class SonarrManager:
    """Holds one SonarrClient per enabled instance row"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, client_factory=SonarrClient):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._clients: Dict[int, SonarrClient] = {}
        self._instances: List[SonarrInstance] = []
        self._default_instance_id: Optional[int] = None

    def load_instances(self) -> int:
        """(Re)load enabled instances from the database, returns how many were loaded"""
        db = self._session_factory()
        try:
            rows = (
                db.query(SonarrInstance)
                .filter(SonarrInstance.enabled == True)  # noqa: E712
                .order_by(SonarrInstance.id)
                .all()
            )
            self._instances = rows
            self._clients = {
                row.id: self._client_factory(row.base_url, row.api_key, instance_id=row.id)
                for row in rows
            }
            default = next((row for row in rows if row.is_default), rows[0] if rows else None)
            self._default_instance_id = default.id if default else None
            logger.info(f"✓ Loaded {len(rows)} Sonarr instance(s)")
            return len(rows)
        finally:
            db.close()

    async def get_all_instances(self) -> List[SonarrInstance]:
        if not self._instances:
            self.load_instances()
        return list(self._instances)

    def get_instance(self, instance_id: Optional[int]) -> Optional[SonarrClient]:
        if instance_id is None:
            return None
        return self._clients.get(instance_id)

    def get_default_instance_id(self) -> Optional[int]:
        return self._default_instance_id

    def get_instance_id_by_name(self, name: Optional[str]) -> Optional[int]:
        """Instance whose name matches a webhook's instanceName, else the default one"""
        if name:
            for instance in self._instances:
                if instance.name.lower() == name.lower():
                    return instance.id
        return self._default_instance_id

    async def get_season_episode_count(self, instance_id: Optional[int], series_id: int, season_number: int) -> Optional[int]:
        """
        Number of episodes Sonarr knows for one season, None if it can't be determined
        """
        target_id = instance_id if instance_id is not None else self.get_default_instance_id()
        client = self.get_instance(target_id)
        if not client:
            logger.debug(f"No Sonarr instance {target_id} available for episode count lookup")
            return None

        try:
            episodes = await client.get_episodes(series_id, season_number)
        except SonarrError as e:
            logger.warning(f"Episode count lookup failed for series {series_id} S{season_number}: {e}")
            return None

        count = sum(1 for ep in episodes if ep.get("seasonNumber") == season_number)
        return count or None
