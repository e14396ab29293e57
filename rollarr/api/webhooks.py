from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError
import logging

from rollarr.schemas.webhook import (
    ConnectionTestPayload,
    RadarrWebhookPayload,
    SonarrSeriesRef,
    SonarrWebhookPayload,
    parse_webhook_payload,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


def series_key(series: SonarrSeriesRef) -> str:
    """Queue key of a series: its TVDB id, or the Sonarr id when Sonarr has none"""
    if series.tvdbId:
        return str(series.tvdbId)
    return str(series.id)


async def _read_payload(request: Request):
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    try:
        return parse_webhook_payload(body)
    except ValidationError as e:
        logger.warning(f"Invalid webhook payload: {e.error_count()} validation error(s)")
        raise HTTPException(status_code=400, detail="Invalid webhook payload")


@router.post("/sonarr")
async def sonarr_webhook(request: Request):
    """
    Receive Sonarr download webhooks

    Deliveries that are ignored (tests, duplicates, upgrades, other events)
    still answer 200 so Sonarr doesn't retry them.
    """
    payload = await _read_payload(request)
    state = request.app.state
    queue_service = state.webhook_queue_service

    try:
        instance_id = state.sonarr_manager.get_instance_id_by_name(payload.instanceName)

        upgrade_burst = False
        if isinstance(payload, SonarrWebhookPayload) and payload.series and payload.episodes:
            first = payload.episodes[0]
            # Recorded before validation so upgrade deliveries are part of the burst
            upgrade_burst = await queue_service.check_for_upgrade(
                series_key(payload.series),
                first.seasonNumber,
                first.episodeNumber,
                payload.isUpgrade,
                instance_id,
            )

        if not state.deduplicator.is_webhook_processable(payload):
            return {"status": "ignored"}

        if isinstance(payload, RadarrWebhookPayload):
            logger.info(f"Received Radarr download for '{payload.movie.title}', nothing to queue")
            return {"status": "accepted", "type": "movie"}

        if upgrade_burst:
            logger.info(f"Upgrade detected for {payload.series.title}, not queueing")
            return {"status": "ignored", "reason": "upgrade"}

        notified, queued = await queue_service.handle_series_delivery(
            series_key(payload.series),
            payload.series.title,
            payload.series.id,
            payload.episodes,
            instance_id,
        )

        return {
            "status": "queued" if queued or not notified else "notified",
            "series": payload.series.title,
            "episodes": queued,
            "notified": notified,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Webhook processing failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/sonarr/test")
async def sonarr_webhook_test(request: Request):
    """Connectivity check used from the Sonarr connection dialog"""
    payload = await _read_payload(request)
    if isinstance(payload, ConnectionTestPayload):
        logger.info(f"✓ Test webhook received from {payload.instanceName or 'Sonarr'}")
    return {"status": "ok"}
