import hashlib
import json
import logging
import time
from typing import Dict, Optional, Tuple, Union

from rollarr.schemas.webhook import (
    DOWNLOAD_EVENT,
    ConnectionTestPayload,
    RadarrWebhookPayload,
    SonarrWebhookPayload,
)


logger = logging.getLogger(__name__)

DEDUP_TTL_SECONDS = 10.0

AnyPayload = Union[ConnectionTestPayload, SonarrWebhookPayload, RadarrWebhookPayload]


def webhook_fingerprint(payload: AnyPayload) -> str:
    """
    Stable hash of the fields that identify a delivery.

    eventType and isUpgrade are left out so that a download and its upgrade
    notification fired milliseconds later end up with the same key.
    """
    if isinstance(payload, RadarrWebhookPayload):
        movie = payload.movie
        data = {
            "instanceName": payload.instanceName,
            "type": "movie",
            "id": movie.tmdbId if movie.tmdbId is not None else movie.id,
            "title": movie.title,
            "season": None,
            "episode": None,
        }
    else:
        series = getattr(payload, "series", None)
        episodes = getattr(payload, "episodes", None) or []
        first = episodes[0] if episodes else None
        data = {
            "instanceName": payload.instanceName,
            "type": "series",
            "id": (series.tvdbId if series.tvdbId is not None else series.id) if series else None,
            "title": series.title if series else "",
            "season": first.seasonNumber if first else None,
            "episode": first.episodeNumber if first else None,
        }

    raw = json.dumps(data, sort_keys=True)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def _describe(payload: AnyPayload) -> str:
    if isinstance(payload, RadarrWebhookPayload):
        return f"movie '{payload.movie.title}'"
    series = getattr(payload, "series", None)
    episodes = getattr(payload, "episodes", None) or []
    title = series.title if series else "?"
    if episodes:
        return f"{title} S{episodes[0].seasonNumber:02d}E{episodes[0].episodeNumber:02d}"
    return title


class WebhookDeduplicator:
    """Rejects malformed, test and repeated webhook deliveries"""

    def __init__(self, ttl_seconds: float = DEDUP_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[float, str]] = {}

    def _sweep(self, now: float):
        expired = [key for key, (ts, _) in self._cache.items() if now - ts > self.ttl_seconds]
        for key in expired:
            del self._cache[key]

    def _validation_error(self, payload: AnyPayload) -> Optional[str]:
        if isinstance(payload, ConnectionTestPayload):
            return "test event"

        if isinstance(payload, SonarrWebhookPayload):
            if not payload.series or not payload.episodes or not payload.eventType:
                return "missing series, episodes or eventType"
            if payload.eventType != DOWNLOAD_EVENT:
                return f"eventType '{payload.eventType}' is not a download"
            if payload.isUpgrade:
                return "is an upgrade event"
            if not payload.has_file_info:
                return "no file information"

        return None

    def is_webhook_processable(self, payload: AnyPayload) -> bool:
        reason = self._validation_error(payload)
        if reason:
            logger.debug(f"Skipping webhook - {reason}")
            return False

        fingerprint = webhook_fingerprint(payload)
        now = self._clock()
        cached = self._cache.get(fingerprint)
        if cached and now - cached[0] <= self.ttl_seconds:
            logger.info(
                f"Duplicate webhook detected within deduplication window: {cached[1]} "
                f"({now - cached[0]:.1f}s ago)"
            )
            return False

        self._cache[fingerprint] = (now, _describe(payload))
        self._sweep(now)
        return True

    def clear(self):
        self._cache.clear()

    def __len__(self):
        return len(self._cache)
