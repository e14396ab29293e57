"""
Plex session monitor.

Polls the active Plex sessions and, for every episode being watched, decides
whether Sonarr should search for the next season. Shows under rolling
monitoring only have their frontier season monitored; the frontier moves
forward as the viewer approaches the end of it.

Sessions are processed one after another. Within a session the order is
identity -> series lookup -> rolling check -> action -> mark seen.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from rollarr.models.rolling_monitored_show import RollingMonitoredShow, utcnow
from rollarr.schemas.plex import PlexSession
from rollarr.services.plex_server import PlexServer
from rollarr.services.rolling_shows import RollingShowStore
from rollarr.services.sonarr_manager import SonarrManager
from rollarr.settings import SessionMonitoringSettings
from rollarr.utils.guid import extract_imdb_id, extract_tvdb_id


logger = logging.getLogger(__name__)

SEEN_EXPIRY_DAYS = 7
DEFAULT_REMAINING_EPISODES = 2

EXPANDED_TO_NEXT_SEASON = "expanded_to_next_season"
SWITCHED_TO_ALL = "switched_to_all"


@dataclass
class RollingUpdate:
    show_title: str
    action: str
    details: str


@dataclass
class SessionMonitoringResult:
    processed_sessions: int = 0
    triggered_searches: int = 0
    errors: List[str] = field(default_factory=list)
    rolling_updates: List[RollingUpdate] = field(default_factory=list)


@dataclass
class SeenEntry:
    series: str
    season: int
    timestamp: datetime


@dataclass
class SeriesIdentifiers:
    tvdb_id: Optional[str] = None
    imdb_id: Optional[str] = None


@dataclass
class SonarrMatch:
    series: dict
    instance_id: int

    def season(self, number: int) -> Optional[dict]:
        return next((s for s in self.series.get("seasons") or [] if s.get("seasonNumber") == number), None)

    def has_season(self, number: int) -> bool:
        return self.season(number) is not None

    def has_season_after(self, number: int) -> bool:
        return any((s.get("seasonNumber") or 0) > number for s in self.series.get("seasons") or [])


def _statistics(season: Optional[dict]) -> dict:
    if not season:
        return {}
    return season.get("statistics") or {}


class PlexSessionMonitor:
    """Turns Plex playback activity into Sonarr searches"""

    def __init__(
        self,
        plex_server: PlexServer,
        sonarr_manager: SonarrManager,
        store: RollingShowStore,
        settings: Optional[SessionMonitoringSettings] = None,
    ):
        self.plex_server = plex_server
        self.sonarr_manager = sonarr_manager
        self.store = store
        self.settings = settings or SessionMonitoringSettings()
        self._seen: Dict[str, SeenEntry] = {}

    @property
    def threshold(self) -> int:
        return self.settings.remaining_episodes or DEFAULT_REMAINING_EPISODES

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def monitor_sessions(self) -> SessionMonitoringResult:
        result = SessionMonitoringResult()

        try:
            self._cleanup_seen_entries()

            sessions = await self.plex_server.get_active_sessions()
            if not sessions:
                logger.debug("No active Plex sessions found")
                return result

            logger.info(f"Found {len(sessions)} active Plex session(s)")

            for session in sessions:
                try:
                    await self._process_session(session, result)
                except Exception as e:
                    message = f"Error processing session for {session.grandparentTitle or 'Unknown'}: {e}"
                    logger.error(message, exc_info=True)
                    result.errors.append(message)

            logger.info(
                f"Session monitoring complete. Processed: {result.processed_sessions}, "
                f"Triggered: {result.triggered_searches}"
            )
        except Exception as e:
            message = f"Fatal error in session monitoring: {e}"
            logger.error(message, exc_info=True)
            result.errors.append(message)

        return result

    def _is_user_allowed(self, session: PlexSession) -> bool:
        allowed = self.settings.filter_users
        if not allowed:
            return True
        return session.User.id in allowed or session.User.title in allowed

    async def _process_session(self, session: PlexSession, result: SessionMonitoringResult):
        if session.type != "episode":
            return

        if not self._is_user_allowed(session):
            logger.debug(f"Skipping session for user {session.User.title} - not in filter list")
            return

        result.processed_sessions += 1
        logger.info(f"▶ Processing session: {session.episode_label} watched by {session.User.title}")

        identifiers = await self.get_series_identifiers(session)

        rolling_show = self.store.get_by_identity(
            identifiers.tvdb_id,
            session.grandparentTitle,
            plex_user_id=session.User.id or None,
        )
        if rolling_show:
            await self._handle_rolling_show(session, rolling_show, identifiers, result)
        else:
            await self._handle_standard_monitoring(session, identifiers, result)

    # ------------------------------------------------------------------
    # Identity and series lookup
    # ------------------------------------------------------------------

    async def get_series_identifiers(self, session: PlexSession) -> SeriesIdentifiers:
        """
        TVDB/IMDB ids of the show being watched

        Never fails: without metadata an empty set is returned and matching
        falls back to the title.
        """
        identifiers = SeriesIdentifiers()
        rating_key = session.grandparentKey.rstrip("/").split("/")[-1] if session.grandparentKey else ""
        if not rating_key:
            logger.debug(f"No rating key for {session.grandparentTitle}, falling back to title matching")
            return identifiers

        try:
            metadata = await self.plex_server.get_show_metadata(rating_key, extended=False)
        except Exception as e:
            logger.debug(f"Could not fetch metadata for {session.grandparentTitle}, falling back to title matching: {e}")
            return identifiers

        if metadata is None:
            return identifiers

        guids = metadata.all_guids()
        tvdb_id = extract_tvdb_id(guids)
        if tvdb_id > 0:
            identifiers.tvdb_id = str(tvdb_id)
        identifiers.imdb_id = extract_imdb_id(guids)

        logger.debug(f"Identifiers for {session.grandparentTitle}: tvdb={identifiers.tvdb_id} imdb={identifiers.imdb_id}")
        return identifiers

    async def find_series_in_sonarr(self, identifiers: SeriesIdentifiers, title: str) -> Optional[SonarrMatch]:
        """First series matching by TVDB id, then IMDB id, then title, across instances in order"""
        tvdb_id = int(identifiers.tvdb_id) if identifiers.tvdb_id and identifiers.tvdb_id.isdigit() else None

        for instance in await self.sonarr_manager.get_all_instances():
            client = self.sonarr_manager.get_instance(instance.id)
            if not client:
                continue

            try:
                all_series = await client.get_all_series()
            except Exception as e:
                logger.error(f"Error searching Sonarr instance {instance.id}: {e}")
                continue

            if tvdb_id is not None:
                series = next((s for s in all_series if s.get("tvdbId") == tvdb_id), None)
                if series:
                    return SonarrMatch(series=series, instance_id=instance.id)

            if identifiers.imdb_id:
                series = next((s for s in all_series if s.get("imdbId") == identifiers.imdb_id), None)
                if series:
                    return SonarrMatch(series=series, instance_id=instance.id)

            series = next((s for s in all_series if (s.get("title") or "").lower() == title.lower()), None)
            if series:
                return SonarrMatch(series=series, instance_id=instance.id)

        return None

    # ------------------------------------------------------------------
    # Rolling monitoring
    # ------------------------------------------------------------------

    async def _handle_rolling_show(
        self,
        session: PlexSession,
        rolling_show: RollingMonitoredShow,
        identifiers: SeriesIdentifiers,
        result: SessionMonitoringResult,
    ):
        current_season = session.parentIndex
        current_episode = session.index

        self.store.update_progress(rolling_show.id, current_season, current_episode)

        match = await self.find_series_in_sonarr(identifiers, session.grandparentTitle)
        if not match:
            logger.warning(f"Rolling show {session.grandparentTitle} not found in any Sonarr instance")
            return

        total = _statistics(match.season(current_season)).get("totalEpisodeCount")
        if not total:
            return

        remaining = total - current_episode
        if not 0 <= remaining <= self.threshold:
            return

        has_more_seasons = match.has_season_after(current_season)
        if has_more_seasons and current_season >= rolling_show.current_monitored_season:
            await self._expand_to_next_season(rolling_show, session, result)
        elif not has_more_seasons:
            await self._switch_to_monitor_all(rolling_show, session, result)

    async def _expand_to_next_season(
        self,
        rolling_show: RollingMonitoredShow,
        session: PlexSession,
        result: SessionMonitoringResult,
    ):
        next_season = rolling_show.current_monitored_season + 1
        client = self.sonarr_manager.get_instance(rolling_show.sonarr_instance_id)
        if not client:
            logger.warning(f"Sonarr instance {rolling_show.sonarr_instance_id} for {rolling_show.show_title} is not available")
            return

        try:
            await client.update_season_monitoring(rolling_show.sonarr_series_id, next_season, True)
            await client.search_season(rolling_show.sonarr_series_id, next_season)
        except Exception as e:
            logger.error(f"❌ Failed to expand monitoring for {session.grandparentTitle} to season {next_season}: {e}")
            return

        # Sonarr already searches the season, only the stored frontier is stale
        result.triggered_searches += 1
        if not self.store.update_monitored_season(rolling_show.id, next_season):
            message = f"Could not save season {next_season} as monitoring frontier for {rolling_show.show_title}"
            logger.error(f"❌ {message}")
            result.errors.append(message)
            return

        result.rolling_updates.append(RollingUpdate(
            show_title=session.grandparentTitle,
            action=EXPANDED_TO_NEXT_SEASON,
            details=f"Now monitoring up to season {next_season}",
        ))
        logger.info(f"✅ Expanded monitoring for {session.grandparentTitle} to include season {next_season}")

    async def _switch_to_monitor_all(
        self,
        rolling_show: RollingMonitoredShow,
        session: PlexSession,
        result: SessionMonitoringResult,
    ):
        client = self.sonarr_manager.get_instance(rolling_show.sonarr_instance_id)
        if not client:
            logger.warning(f"Sonarr instance {rolling_show.sonarr_instance_id} for {rolling_show.show_title} is not available")
            return

        try:
            await client.update_series_monitoring(
                rolling_show.sonarr_series_id,
                monitored=True,
                monitor_new_items="all",
            )
        except Exception as e:
            logger.error(f"❌ Failed to switch {session.grandparentTitle} to monitor all: {e}")
            return

        self.store.delete(rolling_show.id)
        result.rolling_updates.append(RollingUpdate(
            show_title=session.grandparentTitle,
            action=SWITCHED_TO_ALL,
            details="Now monitoring all future seasons automatically",
        ))
        logger.info(f"✅ Switched {session.grandparentTitle} to monitor all future seasons")

    # ------------------------------------------------------------------
    # Standard monitoring
    # ------------------------------------------------------------------

    async def _handle_standard_monitoring(
        self,
        session: PlexSession,
        identifiers: SeriesIdentifiers,
        result: SessionMonitoringResult,
    ):
        match = await self.find_series_in_sonarr(identifiers, session.grandparentTitle)
        if not match:
            logger.warning(f"Series {session.grandparentTitle} not found in any Sonarr instance")
            return
        logger.debug(f"Found {match.series.get('title')} in Sonarr instance {match.instance_id}")

        if not self.should_trigger_search(session, match):
            return

        next_season = session.parentIndex + 1
        seen_key = f"{identifiers.tvdb_id or session.grandparentTitle}_{next_season}"
        if self._has_seen_recently(seen_key):
            logger.debug(f"Already processed {session.grandparentTitle} season {next_season} recently")
            return

        if self.is_standalone_pilot(session, match):
            await self._handle_standalone_pilot(match, session, result)
        else:
            await self._handle_end_of_season(match, session, result)

        self._mark_as_seen(seen_key, next_season)

    def should_trigger_search(self, session: PlexSession, match: SonarrMatch) -> bool:
        threshold = self.threshold

        if self.is_standalone_pilot(session, match):
            logger.info(f"Detected standalone pilot for {session.grandparentTitle} (only 1 episode file in Sonarr)")
            return True

        stats = _statistics(match.season(session.parentIndex))
        if not stats:
            logger.warning(f"No season statistics in Sonarr for {session.grandparentTitle} season {session.parentIndex}")
            return False

        total = stats.get("totalEpisodeCount") or 0
        if total <= 0:
            logger.warning(f"Invalid episode count in Sonarr for {session.grandparentTitle} season {session.parentIndex}: {total}")
            return False

        if session.index > total - threshold:
            logger.info(f"Near end of season for {session.grandparentTitle} (episode {session.index} of {total})")
            return True

        logger.debug(f"Not near end of season for {session.grandparentTitle}: {session.index} <= {total} - {threshold}")
        return False

    @staticmethod
    def is_standalone_pilot(session: PlexSession, match: SonarrMatch) -> bool:
        if session.parentIndex != 1 or session.index != 1:
            return False
        return _statistics(match.season(1)).get("episodeFileCount") == 1

    async def _handle_standalone_pilot(self, match: SonarrMatch, session: PlexSession, result: SessionMonitoringResult):
        client = self.sonarr_manager.get_instance(match.instance_id)
        if not client:
            return

        logger.info(f"Searching remaining season 1 episodes of {session.grandparentTitle}")
        try:
            await client.search_season(match.series["id"], 1)
        except Exception as e:
            logger.error(f"❌ Failed to search {session.grandparentTitle} season 1: {e}")
            return

        result.triggered_searches += 1

    async def _handle_end_of_season(self, match: SonarrMatch, session: PlexSession, result: SessionMonitoringResult):
        client = self.sonarr_manager.get_instance(match.instance_id)
        if not client:
            return

        next_season = session.parentIndex + 1
        try:
            if match.has_season(next_season):
                await client.search_season(match.series["id"], next_season)
                result.triggered_searches += 1
                logger.info(f"✅ Triggered search for {session.grandparentTitle} season {next_season}")
            else:
                await client.update_series_monitoring(match.series["id"], monitored=True, monitor_new_items="all")
                logger.info(f"Enabled monitoring of new seasons for {session.grandparentTitle}")
        except Exception as e:
            logger.error(f"❌ Failed to handle end of season for {session.grandparentTitle}: {e}")

    # ------------------------------------------------------------------
    # Seen cache
    # ------------------------------------------------------------------

    def _cleanup_seen_entries(self):
        cutoff = utcnow() - timedelta(days=SEEN_EXPIRY_DAYS)
        for key in [k for k, entry in self._seen.items() if entry.timestamp < cutoff]:
            del self._seen[key]

    def _has_seen_recently(self, key: str) -> bool:
        entry = self._seen.get(key)
        if entry is None:
            return False
        return entry.timestamp > utcnow() - timedelta(days=SEEN_EXPIRY_DAYS)

    def _mark_as_seen(self, key: str, season: int):
        self._seen[key] = SeenEntry(series=key, season=season, timestamp=utcnow())

    # ------------------------------------------------------------------
    # Rolling show creation
    # ------------------------------------------------------------------

    def create_rolling_monitored_show(
        self,
        sonarr_series_id: int,
        sonarr_instance_id: int,
        tvdb_id: Optional[str],
        show_title: str,
        monitoring_type: str,
        imdb_id: Optional[str] = None,
    ) -> int:
        """Start rolling monitoring at season 1, raises RollingShowError on failure"""
        show_id = self.store.create(
            sonarr_series_id=sonarr_series_id,
            sonarr_instance_id=sonarr_instance_id,
            show_title=show_title,
            monitoring_type=monitoring_type,
            tvdb_id=tvdb_id,
            imdb_id=imdb_id,
            current_monitored_season=1,
        )
        logger.info(f"Created rolling monitoring entry for {show_title} with {monitoring_type}")
        return show_id
