import logging
from rollarr.database import SessionLocal
from rollarr.models.config import Config


logger = logging.getLogger(__name__)


DEFAULT_CONFIGS = [
    # System
    ("log_level", "INFO", "system", False, "string", "Log level (DEBUG, INFO, WARNING, ERROR)"),

    # Plex
    ("plex_url", "", "plex", False, "string", "Plex server URL (e.g. http://localhost:32400)"),
    ("plex_token", "", "plex", True, "string", "Plex token"),

    # Session monitoring
    ("session_monitoring_enabled", "false", "session_monitoring", False, "boolean", "Poll Plex sessions and trigger Sonarr searches"),
    ("session_monitoring_interval_minutes", "5", "session_monitoring", False, "integer", "Minutes between session polls"),
    ("session_monitoring_remaining_episodes", "2", "session_monitoring", False, "integer", "Episodes left in a season that trigger the next search"),
    ("session_monitoring_filter_users", "[]", "session_monitoring", False, "json", "Only react to these Plex user ids/names (empty = everyone)"),
    ("rolling_auto_reset_enabled", "false", "session_monitoring", False, "boolean", "Reset inactive rolling shows automatically"),
    ("rolling_inactivity_reset_days", "7", "session_monitoring", False, "integer", "Days without activity before a rolling show is reset"),
    ("rolling_auto_reset_interval_hours", "24", "session_monitoring", False, "integer", "Hours between automatic reset runs"),

    # Webhooks
    ("upgrade_buffer_time", "2000", "webhooks", False, "integer", "Window (ms) in which webhooks for the same episode count as one burst"),
    ("queue_wait_time", "120000", "webhooks", False, "integer", "Time (ms) an incomplete season waits before it is flushed"),
    ("new_episode_threshold", "172800000", "webhooks", False, "integer", "Episodes aired within this many ms count as new"),
    ("pending_webhook_retry_interval", "20", "webhooks", False, "integer", "Seconds between pending webhook retries"),
    ("pending_webhook_max_age", "10", "webhooks", False, "integer", "Minutes a pending webhook is kept"),
    ("pending_webhook_cleanup_interval", "60", "webhooks", False, "integer", "Seconds between pending webhook cleanups"),
]


def init_config(db=None):
    """Insert default config rows that don't exist yet"""
    own_session = db is None
    if own_session:
        db = SessionLocal()

    try:
        for key, value, module, secret, data_type, description in DEFAULT_CONFIGS:
            existing = db.query(Config).filter_by(key=key).first()
            if not existing:
                config = Config(
                    key=key,
                    value=value,
                    module=module,
                    secret=secret,
                    data_type=data_type,
                    description=description
                )
                db.add(config)
                logger.info(f"✓ Added config: {key}")

        db.commit()
        logger.info("✅ Base config initialized")
    finally:
        if own_session:
            db.close()
