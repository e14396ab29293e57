# tests/test_webhook_queue.py
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from rollarr.schemas.webhook import SonarrEpisode
from rollarr.settings import WebhookSettings
from rollarr.services.webhook_queue import WebhookQueue, WebhookQueueService


def ep(number, season=1, air_date=None):
    return SonarrEpisode(episodeNumber=number, seasonNumber=season, airDateUtc=air_date)


def iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


class CountLookup:
    def __init__(self, count=3, fail=False):
        self.count = count
        self.fail = fail
        self.calls = []

    async def __call__(self, instance_id, series_id, season):
        self.calls.append((instance_id, series_id, season))
        if self.fail:
            raise RuntimeError("sonarr down")
        return self.count


@pytest.fixture
def ready():
    return []


@pytest.fixture
def lookup():
    return CountLookup()


@pytest.fixture
def service(lookup, ready):
    return WebhookQueueService(
        WebhookQueue(),
        episode_count_lookup=lookup,
        settings=WebhookSettings(),
        on_season_ready=ready.append,
        debounce_seconds=0.05,
    )


# Upgrade tracking

@pytest.mark.asyncio
async def test_upgrade_in_same_burst_is_detected(service):
    async def second_delivery():
        await asyncio.sleep(0.01)
        return await service.check_for_upgrade("371980", 1, 1, True, 1)

    first, second = await asyncio.gather(
        service.check_for_upgrade("371980", 1, 1, False, 1),
        second_delivery(),
    )
    assert first is True
    assert second is True


@pytest.mark.asyncio
async def test_single_download_is_not_an_upgrade(service):
    assert await service.check_for_upgrade("371980", 1, 1, False, 1) is False


@pytest.mark.asyncio
async def test_upgrade_tracker_creates_queue_entries(service):
    await service.check_for_upgrade("371980", 2, 4, False, 3)
    entry = service.queue.get_season("371980", 2)
    assert entry is not None
    assert entry.instance_id == 3
    assert service.queue.get_show("371980").title == ""
    assert "2-4" in entry.upgrade_tracker


@pytest.mark.asyncio
async def test_events_outside_buffer_are_swept():
    now = [100.0]
    service = WebhookQueueService(WebhookQueue(), debounce_seconds=0, clock=lambda: now[0])

    assert await service.check_for_upgrade("1", 1, 1, True) is True
    now[0] += 2.5
    # The old upgrade event is outside the 2s buffer and no longer counts
    assert await service.check_for_upgrade("1", 1, 1, False) is False
    now[0] += 2.5
    await service.check_for_upgrade("1", 1, 2, False)
    assert "1-1" not in service.queue.get_season("1", 1).upgrade_tracker


# Completion detection

@pytest.mark.asyncio
async def test_expected_count_is_cached(service, lookup):
    service.queue.ensure_show("1", "Show", 7)
    service.queue.ensure_season("1", 1, instance_id=2)

    assert await service.fetch_expected_episode_count("1", 1) == 3
    assert await service.fetch_expected_episode_count("1", 1) == 3
    assert lookup.calls == [(2, 7, 1)]


@pytest.mark.asyncio
async def test_expected_count_missing_linkage_returns_none(service, lookup):
    service.queue.ensure_season("1", 1)
    assert await service.fetch_expected_episode_count("1", 1) is None
    assert await service.fetch_expected_episode_count("unknown", 1) is None
    assert lookup.calls == []


@pytest.mark.asyncio
async def test_failed_lookup_is_not_cached(ready):
    lookup = CountLookup(fail=True)
    service = WebhookQueueService(WebhookQueue(), episode_count_lookup=lookup)
    service.queue.ensure_show("1", "Show", 7)
    service.queue.ensure_season("1", 1)

    assert await service.fetch_expected_episode_count("1", 1) is None
    lookup.fail = False
    assert await service.fetch_expected_episode_count("1", 1) == 3


def test_season_without_expected_count_is_not_complete(service):
    entry = service.queue.ensure_season("1", 1)
    entry.episodes.extend([ep(1), ep(2), ep(3)])
    assert service.is_season_complete("1", 1) is False


def test_completion_counts_distinct_episodes_and_is_monotonic(service):
    entry = service.queue.ensure_season("1", 1)
    entry.expected_episode_count = 3
    entry.episodes.extend([ep(3), ep(1), ep(1)])
    assert service.is_season_complete("1", 1) is False

    entry.episodes.append(ep(2))
    assert service.is_season_complete("1", 1) is True

    entry.episodes.extend([ep(4), ep(2)])
    assert service.is_season_complete("1", 1) is True


# Queue processing

@pytest.mark.asyncio
async def test_complete_season_is_handed_over(service, ready):
    await service.add_episodes_to_queue("1", "Severance", 7, 1, [ep(2), ep(1)], instance_id=1)
    assert ready == []

    added = await service.add_episodes_to_queue("1", "Severance", 7, 1, [ep(2), ep(3)], instance_id=1)
    assert added == 1
    assert len(ready) == 1
    season = ready[0]
    assert season.title == "Severance"
    assert season.complete is True
    assert [e.episodeNumber for e in season.episodes] == [1, 2, 3]
    assert "1" not in service.queue


@pytest.mark.asyncio
async def test_already_queued_episodes_are_skipped(service):
    await service.add_episodes_to_queue("1", "Severance", 7, 1, [ep(1)])
    assert service.is_episode_already_queued("1", 1, 1) is True
    assert await service.add_episodes_to_queue("1", "Severance", 7, 1, [ep(1)]) == 0
    assert len(service.queue.get_season("1", 1).episodes) == 1


@pytest.mark.asyncio
async def test_process_empty_season_does_nothing(service, ready):
    service.queue.ensure_season("1", 1)
    assert await service.process_queued_webhooks("1", 1) is False
    assert await service.process_queued_webhooks("missing", 1) is False
    assert ready == []


@pytest.mark.asyncio
async def test_notified_season_without_new_episodes_is_cleared(service, ready):
    old = iso(datetime.now(timezone.utc) - timedelta(days=30))
    entry = service.queue.ensure_season("1", 1)
    entry.episodes.append(ep(1, air_date=old))
    entry.notified_seasons.add(1)

    assert await service.process_queued_webhooks("1", 1) is False
    assert ready == []
    assert "1" not in service.queue


@pytest.mark.asyncio
async def test_notified_season_with_recent_episode_is_handed_over(service, ready):
    recent = iso(datetime.now(timezone.utc) - timedelta(hours=2))
    entry = service.queue.ensure_season("1", 1)
    entry.episodes.append(ep(1, air_date=recent))
    entry.notified_seasons.add(1)

    assert await service.process_queued_webhooks("1", 1) is True
    assert len(ready) == 1


@pytest.mark.asyncio
async def test_handler_errors_do_not_propagate(lookup):
    def broken(_):
        raise RuntimeError("discord down")

    service = WebhookQueueService(WebhookQueue(), episode_count_lookup=lookup, on_season_ready=broken)
    entry = service.queue.ensure_season("1", 1)
    entry.episodes.append(ep(1))
    assert await service.process_queued_webhooks("1", 1) is True


@pytest.mark.asyncio
async def test_async_handler_is_awaited(lookup):
    received = []

    async def handler(season):
        received.append(season.season)

    service = WebhookQueueService(WebhookQueue(), episode_count_lookup=lookup, on_season_ready=handler)
    service.queue.ensure_season("1", 4).episodes.append(ep(1, season=4))
    await service.process_queued_webhooks("1", 4)
    assert received == [4]


@pytest.mark.asyncio
async def test_flush_processes_only_stale_seasons(service, ready):
    await service.add_episodes_to_queue("1", "Old", 7, 1, [ep(1)])
    await service.add_episodes_to_queue("2", "Fresh", 8, 1, [ep(1)])
    service.queue.get_season("1", 1).last_updated -= timedelta(minutes=5)

    assert await service.flush_stale_seasons() == 1
    assert [s.title for s in ready] == ["Old"]
    assert ready[0].complete is False
    assert "2" in service.queue


@pytest.mark.asyncio
async def test_flush_drops_upgrade_only_entries(service, ready):
    await service.check_for_upgrade("1", 1, 1, False)
    service.queue.get_season("1", 1).last_updated -= timedelta(minutes=5)

    assert await service.flush_stale_seasons() == 0
    assert "1" not in service.queue
    assert ready == []


def test_is_recent_episode(service):
    now = datetime.now(timezone.utc)
    assert service.is_recent_episode(iso(now - timedelta(hours=47))) is True
    assert service.is_recent_episode(iso(now - timedelta(hours=49))) is False
    assert service.is_recent_episode(iso(now + timedelta(days=3))) is True
    assert service.is_recent_episode(None) is False
    assert service.is_recent_episode("not a date") is False


@pytest.mark.asyncio
async def test_shutdown_clears_queue(service):
    await service.add_episodes_to_queue("1", "Severance", 7, 1, [ep(1)])
    service.shutdown()
    assert len(service.queue) == 0


@pytest.mark.asyncio
async def test_delivery_splits_recent_and_older_episodes(service, ready):
    now = datetime.now(timezone.utc)
    recent = iso(now - timedelta(hours=1))
    old = iso(now - timedelta(days=200))

    notified, queued = await service.handle_series_delivery(
        "1", "Severance", 7, [ep(9, season=2, air_date=recent), ep(1, air_date=old), ep(2, air_date=old)], instance_id=1,
    )

    assert (notified, queued) == (1, 2)
    assert len(ready) == 1
    assert ready[0].recent is True
    assert ready[0].complete is False
    assert [e.episodeNumber for e in ready[0].episodes] == [9]
    assert not service.is_episode_already_queued("1", 2, 9)
    assert service.is_episode_already_queued("1", 1, 2)


@pytest.mark.asyncio
async def test_delivery_without_air_dates_is_batched(service, ready):
    notified, queued = await service.handle_series_delivery("1", "Severance", 7, [ep(1), ep(2)])

    assert (notified, queued) == (0, 2)
    assert ready == []
