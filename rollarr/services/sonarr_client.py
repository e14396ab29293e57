import httpx
import logging
from typing import Dict, List, Optional

from rollarr.utils.network import create_httpx_client


logger = logging.getLogger(__name__)


class SonarrError(Exception):
    """A Sonarr API call failed (transport error or non-2xx status)"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SonarrClient:
    """Thin async client for the parts of the Sonarr v3 API the monitor uses"""

    def __init__(
        self,
        sonarr_url: str,
        api_key: str,
        instance_id: Optional[int] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.sonarr_url = sonarr_url.rstrip('/')
        self.api_key = api_key
        self.instance_id = instance_id
        self.timeout = timeout
        self.headers = {"X-Api-Key": api_key}
        self.transport = transport

    async def _request(self, method: str, path: str, **kwargs):
        url = f"{self.sonarr_url}/api/v3/{path.lstrip('/')}"
        try:
            async with create_httpx_client(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.request(method, url, headers=self.headers, **kwargs)
        except httpx.HTTPError as e:
            raise SonarrError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            raise SonarrError(
                f"{method} {path} failed: HTTP {resp.status_code} - {resp.text[:200]}",
                status_code=resp.status_code,
            )

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise SonarrError(f"{method} {path} returned invalid JSON") from e

    async def get_all_series(self) -> List[Dict]:
        """All series of this instance"""
        series = await self._request("GET", "series")
        return series or []

    async def get_series(self, series_id: int) -> Dict:
        series = await self._request("GET", f"series/{series_id}")
        if not series:
            raise SonarrError(f"Series {series_id} not found", status_code=404)
        return series

    async def get_episodes(self, series_id: int, season_number: Optional[int] = None) -> List[Dict]:
        """
        Episodes of a series, optionally restricted to one season.

        Filtering by season happens server-side, which is the indexed
        endpoint; series statistics are far too slow on big libraries.
        """
        params = {"seriesId": series_id}
        if season_number is not None:
            params["seasonNumber"] = season_number
        episodes = await self._request("GET", "episode", params=params)
        return episodes or []

    async def update_season_monitoring(self, series_id: int, season_number: int, monitored: bool) -> None:
        """
        Set the monitored flag of one season

        Raises SonarrError when the season does not exist.
        """
        series = await self.get_series(series_id)
        seasons = series.get("seasons") or []

        season = next((s for s in seasons if s.get("seasonNumber") == season_number), None)
        if season is None:
            raise SonarrError(f"Season {season_number} not found in series {series_id}")

        season["monitored"] = monitored
        await self._request("PUT", f"series/{series_id}", json=series)
        logger.info(f"Updated monitoring for series {series_id} season {season_number} to {monitored}")

    async def update_series_monitoring(
        self,
        series_id: int,
        monitored: Optional[bool] = None,
        monitor_new_items: Optional[str] = None,
    ) -> None:
        """
        Update series level monitoring

        Args:
            series_id: Sonarr series ID
            monitored: Series monitored flag
            monitor_new_items: "all" or "none"
        """
        series = await self.get_series(series_id)
        if monitored is not None:
            series["monitored"] = monitored
        if monitor_new_items is not None:
            series["monitorNewItems"] = monitor_new_items

        await self._request("PUT", f"series/{series_id}", json=series)
        logger.info(f"Updated series {series_id} monitoring settings")

    async def search_season(self, series_id: int, season_number: int) -> Optional[int]:
        """
        Trigger a SeasonSearch, enabling monitoring first where needed

        Returns: command ID
        """
        series = await self.get_series(series_id)
        season = next(
            (s for s in series.get("seasons") or [] if s.get("seasonNumber") == season_number),
            None,
        )
        if season is None:
            raise SonarrError(f"Season {season_number} not found in series {series_id}")

        needs_update = False
        if not season.get("monitored"):
            season["monitored"] = True
            needs_update = True
            logger.info(f"Enabling monitoring for series {series_id} season {season_number}")
        if not series.get("monitored"):
            series["monitored"] = True
            needs_update = True
            logger.info(f"Enabling monitoring for series {series_id}")

        if needs_update:
            await self._request("PUT", f"series/{series_id}", json=series)

        result = await self._request(
            "POST",
            "command",
            json={"name": "SeasonSearch", "seriesId": series_id, "seasonNumber": season_number},
        )
        command_id = (result or {}).get("id")
        logger.info(f"✅ SeasonSearch queued for series {series_id} season {season_number}: command ID {command_id}")
        return command_id
