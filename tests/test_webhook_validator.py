# tests/test_webhook_validator.py
import pytest
from pydantic import ValidationError

from rollarr.schemas.webhook import (
    ConnectionTestPayload,
    RadarrWebhookPayload,
    SonarrWebhookPayload,
    parse_webhook_payload,
)
from rollarr.services.webhook_validator import WebhookDeduplicator, webhook_fingerprint


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def download_payload(episode=1, season=1, **overrides) -> dict:
    payload = {
        "eventType": "Download",
        "instanceName": "Sonarr",
        "series": {"id": 7, "title": "Severance", "tvdbId": 371980},
        "episodes": [{"episodeNumber": episode, "seasonNumber": season, "title": "Good News About Hell"}],
        "episodeFile": {"id": 55, "relativePath": "S01E01.mkv"},
        "isUpgrade": False,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dedup(clock):
    return WebhookDeduplicator(clock=clock)


def test_payload_union_is_discriminated():
    assert isinstance(parse_webhook_payload({"eventType": "Test"}), ConnectionTestPayload)
    assert isinstance(parse_webhook_payload(download_payload()), SonarrWebhookPayload)
    movie = parse_webhook_payload({"eventType": "Download", "movie": {"id": 3, "title": "Heat", "tmdbId": 949}})
    assert isinstance(movie, RadarrWebhookPayload)


def test_malformed_payload_raises_validation_error():
    with pytest.raises(ValidationError):
        parse_webhook_payload({"eventType": "Download", "episodes": [{"seasonNumber": "one"}]})


def test_test_event_is_rejected(dedup):
    assert dedup.is_webhook_processable(parse_webhook_payload({"eventType": "Test"})) is False


@pytest.mark.parametrize("overrides", [
    {"series": None},
    {"episodes": []},
    {"eventType": None},
    {"eventType": "Grab"},
    {"episodeFile": None},
    {"isUpgrade": True},
])
def test_invalid_series_payloads_are_rejected(dedup, overrides):
    assert dedup.is_webhook_processable(parse_webhook_payload(download_payload(**overrides))) is False


def test_episode_files_list_counts_as_file_info(dedup):
    payload = parse_webhook_payload(download_payload(episodeFile=None, episodeFiles=[{"id": 1}]))
    assert dedup.is_webhook_processable(payload) is True


def test_movie_payload_is_accepted(dedup):
    payload = parse_webhook_payload({"eventType": "Download", "instanceName": "Radarr", "movie": {"title": "Heat", "tmdbId": 949}})
    assert dedup.is_webhook_processable(payload) is True


def test_duplicates_within_ttl_are_accepted_once(dedup, clock):
    results = []
    for _ in range(5):
        results.append(dedup.is_webhook_processable(parse_webhook_payload(download_payload())))
        clock.now += 1.5
    assert results.count(True) == 1
    assert results[0] is True


def test_same_delivery_after_ttl_is_accepted_again(dedup, clock):
    assert dedup.is_webhook_processable(parse_webhook_payload(download_payload())) is True
    clock.now += 10.5
    assert dedup.is_webhook_processable(parse_webhook_payload(download_payload())) is True


def test_different_episodes_are_not_duplicates(dedup):
    assert dedup.is_webhook_processable(parse_webhook_payload(download_payload(episode=1))) is True
    assert dedup.is_webhook_processable(parse_webhook_payload(download_payload(episode=2))) is True


def test_expired_entries_are_swept_on_insert(dedup, clock):
    dedup.is_webhook_processable(parse_webhook_payload(download_payload(episode=1)))
    clock.now += 11
    dedup.is_webhook_processable(parse_webhook_payload(download_payload(episode=2)))
    assert len(dedup) == 1


def test_fingerprint_ignores_event_type_and_upgrade_flag():
    first = parse_webhook_payload(download_payload())
    upgrade = parse_webhook_payload(download_payload(eventType="Upgrade", isUpgrade=True))
    assert webhook_fingerprint(first) == webhook_fingerprint(upgrade)


def test_fingerprint_depends_on_episode_and_instance():
    base = webhook_fingerprint(parse_webhook_payload(download_payload()))
    assert base != webhook_fingerprint(parse_webhook_payload(download_payload(episode=2)))
    assert base != webhook_fingerprint(parse_webhook_payload(download_payload(instanceName="Sonarr 4K")))
    assert len(base) == 16


def test_clear_resets_cache(dedup):
    dedup.is_webhook_processable(parse_webhook_payload(download_payload()))
    dedup.clear()
    assert dedup.is_webhook_processable(parse_webhook_payload(download_payload())) is True
