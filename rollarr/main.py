from fastapi import FastAPI
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging


# Setup Logging FIRST
from rollarr.utils.logger import setup_logging, change_log_level_runtime

setup_logging("INFO")

# Reduce noise from external libraries
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)


from rollarr import __version__
from rollarr.database import init_db, SessionLocal
from rollarr.settings import AppSettings, load_settings
from rollarr.startup import init_config
from rollarr.services.plex_server import PlexServer
from rollarr.services.rolling_shows import RollingShowStore
from rollarr.services.session_monitor import PlexSessionMonitor
from rollarr.services.sonarr_manager import SonarrManager
from rollarr.services.webhook_queue import SeasonReady, WebhookQueue, WebhookQueueService
from rollarr.services.webhook_validator import WebhookDeduplicator

from rollarr.api import session_monitoring, webhooks


logger = logging.getLogger(__name__)

QUEUE_FLUSH_INTERVAL_SECONDS = 30

scheduler = None


def read_settings() -> AppSettings:
    db = SessionLocal()
    try:
        return load_settings(db)
    finally:
        db.close()


async def log_season_ready(ready: SeasonReady):
    """Default downstream handler; notification delivery is wired up elsewhere"""
    episodes = ", ".join(f"E{ep.episodeNumber:02d}" for ep in ready.episodes)
    state = "new" if ready.recent else "complete" if ready.complete else "partial"
    logger.info(f"📺 {ready.title} S{ready.season:02d} ready ({state}): {episodes}")


def build_services(app: FastAPI, settings: AppSettings):
    """Create the service graph and hang it on app.state for the routers"""
    sonarr_manager = SonarrManager()
    sonarr_manager.load_instances()

    queue_service = WebhookQueueService(
        WebhookQueue(),
        episode_count_lookup=sonarr_manager.get_season_episode_count,
        settings=settings.webhooks,
        on_season_ready=log_season_ready,
    )
    rolling_store = RollingShowStore()
    plex_server = PlexServer(settings.plex.url, settings.plex.token)

    app.state.settings = settings
    app.state.sonarr_manager = sonarr_manager
    app.state.webhook_queue_service = queue_service
    app.state.deduplicator = WebhookDeduplicator()
    app.state.rolling_store = rolling_store
    app.state.session_monitor = PlexSessionMonitor(
        plex_server,
        sonarr_manager,
        rolling_store,
        settings.session_monitoring,
    )


def start_scheduler(app: FastAPI, settings: AppSettings):
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    sched = AsyncIOScheduler()

    sched.add_job(
        app.state.webhook_queue_service.flush_stale_seasons,
        'interval',
        seconds=QUEUE_FLUSH_INTERVAL_SECONDS,
        id='webhook_queue_flush',
        name='Flush stale webhook seasons',
        max_instances=1,
    )

    monitoring = settings.session_monitoring
    if monitoring.enabled and settings.plex.configured:
        sched.add_job(
            app.state.session_monitor.monitor_sessions,
            'interval',
            minutes=monitoring.polling_interval_minutes,
            id='plex_session_monitoring',
            name='Plex Session Monitoring',
            max_instances=1,
        )
        logger.info(f"✓ Session monitoring every {monitoring.polling_interval_minutes} min")
    elif monitoring.enabled:
        logger.warning("Session monitoring enabled but Plex URL/token not configured")

    if monitoring.enable_auto_reset:
        sched.add_job(
            app.state.rolling_store.reset_inactive,
            'interval',
            hours=monitoring.auto_reset_interval_hours,
            args=[monitoring.inactivity_reset_days],
            id='rolling_auto_reset',
            name='Reset inactive rolling shows',
        )
        logger.info(f"✓ Rolling auto-reset every {monitoring.auto_reset_interval_hours}h")

    sched.start()
    return sched


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler

    # Startup
    logger.info("Starting Rollarr...")
    try:
        init_db()
        logger.info("✓ Database initialized")
    except Exception as e:
        logger.error(f"✗ Database init failed: {e}")
        raise

    try:
        init_config()
    except Exception as e:
        logger.error(f"✗ Config init failed: {e}")

    settings = read_settings()
    change_log_level_runtime(settings.log_level)

    build_services(app, settings)

    try:
        scheduler = start_scheduler(app, settings)
        logger.info("✓ Scheduler started")
    except Exception as e:
        logger.error(f"✗ Scheduler init failed: {e}")

    yield

    # Shutdown
    logger.info("Shutting down Rollarr...")
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
    app.state.webhook_queue_service.shutdown()


app = FastAPI(
    title="Rollarr",
    description="Sonarr webhook aggregation and Plex driven rolling season monitoring",
    version=__version__,
    lifespan=lifespan
)


# Routes
app.include_router(webhooks.router)
app.include_router(session_monitoring.router)


@app.get("/health")
async def health_check():
    return {"status": "ok", "version": __version__}


@app.get("/")
async def root():
    return JSONResponse({
        "app": "Rollarr",
        "version": __version__,
        "docs": "/docs",
        "health": "/health"
    })


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
