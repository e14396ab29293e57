"""
In-memory webhook queue for Sonarr download events.

Episodes of a season are collected per series until either every expected
episode has arrived or the season has waited longer than ``queue_wait_time``.
The finished season is then handed to the ``on_season_ready`` callback.

All mutation happens between awaits on the single event loop, so no locking
is done here. Running the service from several threads would need a lock
around every queue access.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from rollarr.models.rolling_monitored_show import utcnow
from rollarr.schemas.webhook import SonarrEpisode
from rollarr.settings import WebhookSettings


logger = logging.getLogger(__name__)

EpisodeCountLookup = Callable[[Optional[int], int, int], Awaitable[Optional[int]]]


@dataclass
class UpgradeEvent:
    timestamp: float
    is_upgrade: bool


@dataclass
class SeasonQueueEntry:
    episodes: List[SonarrEpisode] = field(default_factory=list)
    first_received: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    notified_seasons: Set[int] = field(default_factory=set)
    # "season-episode" -> events inside the upgrade buffer window
    upgrade_tracker: Dict[str, List[UpgradeEvent]] = field(default_factory=dict)
    instance_id: Optional[int] = None
    expected_episode_count: Optional[int] = None


@dataclass
class ShowQueueEntry:
    title: str = ""
    sonarr_series_id: Optional[int] = None
    seasons: Dict[int, SeasonQueueEntry] = field(default_factory=dict)


@dataclass
class SeasonReady:
    """A season leaving the queue, passed to the downstream handler"""
    series_key: str
    title: str
    sonarr_series_id: Optional[int]
    season: int
    instance_id: Optional[int]
    episodes: List[SonarrEpisode]
    expected_episode_count: Optional[int]
    complete: bool
    # Aired within new_episode_threshold, handed over without batching
    recent: bool = False


class WebhookQueue:
    """series key (TVDB id string) -> ShowQueueEntry"""

    def __init__(self):
        self.shows: Dict[str, ShowQueueEntry] = {}

    def get_show(self, series_key: str) -> Optional[ShowQueueEntry]:
        return self.shows.get(series_key)

    def get_season(self, series_key: str, season: int) -> Optional[SeasonQueueEntry]:
        show = self.shows.get(series_key)
        return show.seasons.get(season) if show else None

    def ensure_show(self, series_key: str, title: str = "", sonarr_series_id: Optional[int] = None) -> ShowQueueEntry:
        show = self.shows.get(series_key)
        if show is None:
            show = ShowQueueEntry(title=title, sonarr_series_id=sonarr_series_id)
            self.shows[series_key] = show
        else:
            if title and not show.title:
                show.title = title
            if sonarr_series_id is not None and show.sonarr_series_id is None:
                show.sonarr_series_id = sonarr_series_id
        return show

    def ensure_season(self, series_key: str, season: int, instance_id: Optional[int] = None) -> SeasonQueueEntry:
        show = self.ensure_show(series_key)
        entry = show.seasons.get(season)
        if entry is None:
            entry = SeasonQueueEntry(instance_id=instance_id)
            show.seasons[season] = entry
        elif entry.instance_id is None and instance_id is not None:
            entry.instance_id = instance_id
        return entry

    def remove_season(self, series_key: str, season: int):
        show = self.shows.get(series_key)
        if not show:
            return
        show.seasons.pop(season, None)
        if not show.seasons:
            del self.shows[series_key]

    def clear(self):
        self.shows.clear()

    def __contains__(self, series_key):
        return series_key in self.shows

    def __len__(self):
        return len(self.shows)


def _parse_air_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class WebhookQueueService:
    """Upgrade tracking, season completion and queue processing on top of a WebhookQueue"""

    def __init__(
        self,
        queue: WebhookQueue,
        episode_count_lookup: Optional[EpisodeCountLookup] = None,
        settings: Optional[WebhookSettings] = None,
        on_season_ready: Optional[Callable[[SeasonReady], object]] = None,
        debounce_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.episode_count_lookup = episode_count_lookup
        self.settings = settings or WebhookSettings()
        self.on_season_ready = on_season_ready
        self.debounce_seconds = debounce_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Upgrade tracking
    # ------------------------------------------------------------------

    def _sweep_upgrade_tracker(self, entry: SeasonQueueEntry, now: float) -> int:
        buffer_seconds = self.settings.upgrade_buffer_time / 1000
        cleaned = 0
        for key in list(entry.upgrade_tracker):
            fresh = [e for e in entry.upgrade_tracker[key] if now - e.timestamp <= buffer_seconds]
            if fresh:
                entry.upgrade_tracker[key] = fresh
            else:
                del entry.upgrade_tracker[key]
                cleaned += 1
        return cleaned

    async def check_for_upgrade(
        self,
        series_key: str,
        season: int,
        episode: int,
        is_upgrade: bool,
        instance_id: Optional[int] = None,
    ) -> bool:
        """
        Record a delivery for one episode and report whether the burst it belongs to is an upgrade

        Waits ``debounce_seconds`` so deliveries fired at nearly the same time
        are all recorded before the decision is made.
        """
        entry = self.queue.ensure_season(series_key, season, instance_id=instance_id)
        key = f"{season}-{episode}"
        now = self._clock()

        entry.upgrade_tracker.setdefault(key, []).append(UpgradeEvent(timestamp=now, is_upgrade=is_upgrade))
        cleaned = self._sweep_upgrade_tracker(entry, now)
        if cleaned:
            logger.debug(f"Upgrade tracker for {series_key} S{season}: cleaned {cleaned} expired entries")

        await asyncio.sleep(self.debounce_seconds)

        events = entry.upgrade_tracker.get(key, [])
        result = any(e.is_upgrade for e in events)
        logger.debug(f"Upgrade check {series_key} S{season}E{episode}: {len(events)} event(s), upgrade={result}")
        return result

    # ------------------------------------------------------------------
    # Season completion
    # ------------------------------------------------------------------

    async def fetch_expected_episode_count(self, series_key: str, season: int) -> Optional[int]:
        show = self.queue.get_show(series_key)
        entry = show.seasons.get(season) if show else None
        if entry is None:
            return None

        if entry.expected_episode_count is not None:
            return entry.expected_episode_count

        if show.sonarr_series_id is None or self.episode_count_lookup is None:
            logger.debug(f"No Sonarr series linked for {series_key}, can't fetch expected episode count")
            return None

        try:
            count = await self.episode_count_lookup(entry.instance_id, show.sonarr_series_id, season)
        except Exception as e:
            logger.debug(f"Expected episode count lookup failed for {series_key} S{season}: {e}")
            return None

        if count is None:
            return None

        # Kept for the lifetime of the season entry, never refreshed
        entry.expected_episode_count = count
        logger.debug(f"Expected episode count for {show.title or series_key} S{season}: {count}")
        return count

    def is_season_complete(self, series_key: str, season: int) -> bool:
        entry = self.queue.get_season(series_key, season)
        if entry is None or entry.expected_episode_count is None:
            return False
        received = {(ep.seasonNumber, ep.episodeNumber) for ep in entry.episodes}
        return len(received) >= entry.expected_episode_count

    # ------------------------------------------------------------------
    # Queue handling
    # ------------------------------------------------------------------

    def is_episode_already_queued(self, series_key: str, season: int, episode: int) -> bool:
        entry = self.queue.get_season(series_key, season)
        if entry is None:
            return False
        return any(ep.episodeNumber == episode for ep in entry.episodes)

    def is_recent_episode(self, air_date_utc: Optional[str]) -> bool:
        aired = _parse_air_date(air_date_utc)
        if aired is None:
            return False
        age_ms = (datetime.now(timezone.utc) - aired).total_seconds() * 1000
        return age_ms <= self.settings.new_episode_threshold

    async def add_episodes_to_queue(
        self,
        series_key: str,
        title: str,
        sonarr_series_id: Optional[int],
        season: int,
        episodes: List[SonarrEpisode],
        instance_id: Optional[int] = None,
    ) -> int:
        """
        Queue the episodes of one delivery

        Returns the number of episodes that were not queued yet. A season
        that is complete afterwards is processed right away.
        """
        self.queue.ensure_show(series_key, title, sonarr_series_id)
        entry = self.queue.ensure_season(series_key, season, instance_id=instance_id)
        if entry.expected_episode_count is None:
            await self.fetch_expected_episode_count(series_key, season)
            # The season may have been flushed while the lookup was running
            self.queue.ensure_show(series_key, title, sonarr_series_id)
            entry = self.queue.ensure_season(series_key, season, instance_id=instance_id)

        added = 0
        for ep in episodes:
            if ep.seasonNumber != season:
                continue
            if self.is_episode_already_queued(series_key, season, ep.episodeNumber):
                logger.debug(f"{title} S{season:02d}E{ep.episodeNumber:02d} already queued, skipping")
                continue
            entry.episodes.append(ep)
            added += 1
        entry.last_updated = utcnow()

        logger.info(
            f"📥 Queued {added} episode(s) for {title} S{season:02d} "
            f"({len(entry.episodes)}/{entry.expected_episode_count or '?'})"
        )

        if self.is_season_complete(series_key, season):
            logger.info(f"✓ {title} S{season:02d} complete, processing")
            await self.process_queued_webhooks(series_key, season)

        return added

    async def process_queued_webhooks(self, series_key: str, season: int) -> bool:
        """Hand a queued season downstream and remove it from the queue, returns True if handed over"""
        show = self.queue.get_show(series_key)
        entry = show.seasons.get(season) if show else None
        if entry is None or not entry.episodes:
            logger.debug(f"No queued episodes for {series_key} S{season}")
            return False

        if season in entry.notified_seasons and not any(self.is_recent_episode(ep.airDateUtc) for ep in entry.episodes):
            logger.info(f"{show.title} S{season:02d} already notified and no new episodes, clearing")
            self.queue.remove_season(series_key, season)
            return False

        entry.notified_seasons.add(season)
        ready = SeasonReady(
            series_key=series_key,
            title=show.title,
            sonarr_series_id=show.sonarr_series_id,
            season=season,
            instance_id=entry.instance_id,
            episodes=sorted(entry.episodes, key=lambda ep: ep.episodeNumber),
            expected_episode_count=entry.expected_episode_count,
            complete=self.is_season_complete(series_key, season),
        )
        self.queue.remove_season(series_key, season)

        await self._hand_over(ready)
        return True

    async def _hand_over(self, ready: SeasonReady):
        if self.on_season_ready is None:
            return
        try:
            result = self.on_season_ready(ready)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"❌ Season handler failed for {ready.title} S{ready.season:02d}: {e}", exc_info=True)

    async def notify_recent_episodes(
        self,
        series_key: str,
        title: str,
        sonarr_series_id: Optional[int],
        episodes: List[SonarrEpisode],
        instance_id: Optional[int] = None,
    ) -> int:
        """Hand freshly aired episodes downstream right away, one SeasonReady per season"""
        by_season: Dict[int, List[SonarrEpisode]] = {}
        for ep in episodes:
            by_season.setdefault(ep.seasonNumber, []).append(ep)

        for season, season_episodes in sorted(by_season.items()):
            logger.info(f"🆕 {title} S{season:02d}: {len(season_episodes)} new episode(s), notifying now")
            await self._hand_over(SeasonReady(
                series_key=series_key,
                title=title,
                sonarr_series_id=sonarr_series_id,
                season=season,
                instance_id=instance_id,
                episodes=sorted(season_episodes, key=lambda ep: ep.episodeNumber),
                expected_episode_count=None,
                complete=False,
                recent=True,
            ))
        return len(episodes)

    async def handle_series_delivery(
        self,
        series_key: str,
        title: str,
        sonarr_series_id: Optional[int],
        episodes: List[SonarrEpisode],
        instance_id: Optional[int] = None,
    ) -> Tuple[int, int]:
        """
        Route the episodes of one accepted delivery

        Episodes aired within new_episode_threshold are handed over at once,
        older ones are batched per season. Returns (notified, queued).
        """
        recent = [ep for ep in episodes if self.is_recent_episode(ep.airDateUtc)]
        older = [ep for ep in episodes if not self.is_recent_episode(ep.airDateUtc)]

        notified = 0
        if recent:
            notified = await self.notify_recent_episodes(series_key, title, sonarr_series_id, recent, instance_id)

        by_season: Dict[int, List[SonarrEpisode]] = {}
        for ep in older:
            by_season.setdefault(ep.seasonNumber, []).append(ep)

        queued = 0
        for season, season_episodes in sorted(by_season.items()):
            queued += await self.add_episodes_to_queue(
                series_key, title, sonarr_series_id, season, season_episodes, instance_id,
            )
        return notified, queued

    async def flush_stale_seasons(self, max_wait_seconds: Optional[float] = None) -> int:
        """Process every season that hasn't received an episode for queue_wait_time"""
        if max_wait_seconds is None:
            max_wait_seconds = self.settings.queue_wait_time / 1000

        now = utcnow()
        stale = [
            (series_key, season)
            for series_key, show in self.queue.shows.items()
            for season, entry in show.seasons.items()
            if (now - entry.last_updated).total_seconds() >= max_wait_seconds
        ]

        processed = 0
        for series_key, season in stale:
            entry = self.queue.get_season(series_key, season)
            if entry is None:
                continue
            if not entry.episodes:
                # Only upgrade bookkeeping, long past the buffer window
                self.queue.remove_season(series_key, season)
                continue
            logger.info(f"⏱ Flushing incomplete season {series_key} S{season} after {max_wait_seconds:.0f}s")
            if await self.process_queued_webhooks(series_key, season):
                processed += 1
        return processed

    def shutdown(self):
        self.queue.clear()
        logger.info("Webhook queue cleared")
