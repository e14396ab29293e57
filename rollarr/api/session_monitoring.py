from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel
import logging

from rollarr.models.rolling_monitored_show import MONITORING_TYPES, PILOT_ROLLING
from rollarr.services.rolling_shows import RollingShowError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/session-monitoring", tags=["session-monitoring"])


class RollingShowCreate(BaseModel):
    sonarr_series_id: int
    sonarr_instance_id: int
    show_title: str
    monitoring_type: str = PILOT_ROLLING
    tvdb_id: Optional[str] = None
    imdb_id: Optional[str] = None


class RollingUserEntryCreate(BaseModel):
    plex_user_id: str
    plex_username: str = ""


@router.post("/run")
async def run_session_monitoring(request: Request):
    """Poll Plex once and act on the active sessions"""
    result = await request.app.state.session_monitor.monitor_sessions()
    return asdict(result)


@router.get("/rolling")
async def list_rolling_shows(request: Request):
    return [show.to_dict() for show in request.app.state.rolling_store.list_all()]


@router.post("/rolling", status_code=201)
async def create_rolling_show(data: RollingShowCreate, request: Request):
    if data.monitoring_type not in MONITORING_TYPES:
        raise HTTPException(status_code=400, detail=f"monitoring_type must be one of {', '.join(MONITORING_TYPES)}")

    try:
        show_id = request.app.state.session_monitor.create_rolling_monitored_show(
            sonarr_series_id=data.sonarr_series_id,
            sonarr_instance_id=data.sonarr_instance_id,
            tvdb_id=data.tvdb_id,
            show_title=data.show_title,
            monitoring_type=data.monitoring_type,
            imdb_id=data.imdb_id,
        )
    except RollingShowError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return request.app.state.rolling_store.get_by_id(show_id).to_dict()


@router.get("/rolling/inactive")
async def list_inactive_rolling_shows(request: Request, days: Optional[int] = Query(None, ge=0)):
    """Shows nobody watched for `days` days (default: configured inactivity period)"""
    if days is None:
        days = request.app.state.settings.session_monitoring.inactivity_reset_days
    return [show.to_dict() for show in request.app.state.rolling_store.get_inactive(days)]


@router.get("/rolling/{show_id}")
async def get_rolling_show(show_id: int, request: Request):
    show = request.app.state.rolling_store.get_by_id(show_id)
    if not show:
        raise HTTPException(status_code=404, detail="Rolling show not found")
    return show.to_dict()


@router.post("/rolling/{show_id}/users")
async def create_rolling_user_entry(show_id: int, data: RollingUserEntryCreate, request: Request):
    try:
        entry_id = request.app.state.rolling_store.create_or_find_user_entry(
            show_id, data.plex_user_id, data.plex_username
        )
    except RollingShowError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"id": entry_id}


@router.delete("/rolling/{show_id}")
async def delete_rolling_show(show_id: int, request: Request):
    if not request.app.state.rolling_store.delete(show_id):
        raise HTTPException(status_code=404, detail="Rolling show not found")
    return {"status": "deleted"}


@router.delete("/rolling/{show_id}/all")
async def delete_all_rolling_entries(show_id: int, request: Request):
    deleted = request.app.state.rolling_store.delete_all_entries(show_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Rolling show not found")
    return {"status": "deleted", "deleted": deleted}


@router.post("/rolling/{show_id}/reset")
async def reset_rolling_show(show_id: int, request: Request):
    store = request.app.state.rolling_store
    if not store.get_by_id(show_id):
        raise HTTPException(status_code=404, detail="Rolling show not found")
    removed = store.reset_to_original(show_id)
    logger.info(f"Rolling show {show_id} reset, {removed} user entries removed")
    return {"status": "reset", "removed_user_entries": removed}
