import logging
from typing import List, Optional

import aiohttp
from pydantic import ValidationError

from rollarr.schemas.plex import PlexSession, PlexShowMetadata
from rollarr.utils.network import create_aiohttp_session


logger = logging.getLogger(__name__)


class PlexError(Exception):
    pass


class PlexServer:
    """Read-only client for the Plex Media Server endpoints the session monitor polls"""

    def __init__(self, url: str, token: str, timeout: float = 10.0):
        self.url = url.rstrip('/')
        self.token = token
        self.timeout = timeout

    @property
    def headers(self) -> dict:
        return {
            "X-Plex-Token": self.token,
            "Accept": "application/json",
        }

    async def _get_json(self, path: str, params: Optional[dict] = None) -> dict:
        url = f"{self.url}{path}"
        try:
            async with create_aiohttp_session(timeout=self.timeout) as session:
                async with session.get(url, headers=self.headers, params=params) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        raise PlexError(f"GET {path} failed: HTTP {resp.status} - {text[:200]}")
                    return await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise PlexError(f"GET {path} failed: {e}") from e

    async def get_active_sessions(self) -> List[PlexSession]:
        """Currently playing sessions, raises PlexError if the server can't be reached"""
        data = await self._get_json("/status/sessions")
        raw_sessions = (data.get("MediaContainer") or {}).get("Metadata") or []

        sessions = []
        for raw in raw_sessions:
            try:
                sessions.append(PlexSession.model_validate(raw))
            except ValidationError as e:
                logger.debug(f"Skipping unparseable Plex session {raw.get('title', '?')}: {e}")
        return sessions

    async def get_show_metadata(self, rating_key: str, extended: bool = False) -> Optional[PlexShowMetadata]:
        """
        Metadata of a show with its external GUIDs

        Plex returns the item as MediaContainer.Metadata[0]; it is flattened
        so callers read MediaContainer.guid / MediaContainer.Guid directly.
        """
        params = {"includeGuids": "1"}
        if extended:
            params["includeChildren"] = "1"

        data = await self._get_json(f"/library/metadata/{rating_key}", params=params)
        container = data.get("MediaContainer") or {}
        items = container.get("Metadata") or []
        if not items:
            return None

        item = items[0]
        return PlexShowMetadata.model_validate({
            "MediaContainer": {"guid": item.get("guid"), "Guid": item.get("Guid")},
        })
