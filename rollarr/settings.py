"""
Typed view over the key/value rows in the ``config`` table.

The services never query Config rows themselves; they receive an
``AppSettings`` snapshot built by ``load_settings``.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from rollarr.models.config import Config


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionMonitoringSettings:
    enabled: bool = False
    polling_interval_minutes: int = 5
    remaining_episodes: int = 2
    filter_users: List[str] = field(default_factory=list)
    enable_auto_reset: bool = False
    inactivity_reset_days: int = 7
    auto_reset_interval_hours: int = 24


@dataclass(frozen=True)
class WebhookSettings:
    upgrade_buffer_time: int = 2000          # ms
    queue_wait_time: int = 120000            # ms
    new_episode_threshold: int = 48 * 60 * 60 * 1000  # ms
    # Persisted for the pending-webhook retry worker, not read by the queue itself
    pending_retry_interval: int = 20         # s
    pending_max_age: int = 10                # min
    pending_cleanup_interval: int = 60       # s


@dataclass(frozen=True)
class PlexSettings:
    url: str = ""
    token: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.url and self.token)


@dataclass(frozen=True)
class AppSettings:
    log_level: str = "INFO"
    plex: PlexSettings = field(default_factory=PlexSettings)
    session_monitoring: SessionMonitoringSettings = field(default_factory=SessionMonitoringSettings)
    webhooks: WebhookSettings = field(default_factory=WebhookSettings)


def _read(rows: dict, key: str, default):
    config = rows.get(key)
    if config is None or config.value in (None, ""):
        return default
    try:
        value = config.typed_value
    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid value for config '{key}' ({config.value!r}), using default: {e}")
        return default
    if default is not None and not isinstance(value, type(default)):
        logger.warning(f"Config '{key}' has unexpected type {type(value).__name__}, using default")
        return default
    return value


def _read_user_filter(rows: dict) -> List[str]:
    users = _read(rows, "session_monitoring_filter_users", [])
    return [str(u) for u in users if str(u).strip()]


def load_settings(db: Session, rows: Optional[dict] = None) -> AppSettings:
    """Build an AppSettings snapshot from the config table"""
    if rows is None:
        rows = {c.key: c for c in db.query(Config).all()}

    session_defaults = SessionMonitoringSettings()
    webhook_defaults = WebhookSettings()

    return AppSettings(
        log_level=str(_read(rows, "log_level", "INFO")).upper(),
        plex=PlexSettings(
            url=_read(rows, "plex_url", "").rstrip("/"),
            token=_read(rows, "plex_token", ""),
        ),
        session_monitoring=SessionMonitoringSettings(
            enabled=_read(rows, "session_monitoring_enabled", session_defaults.enabled),
            polling_interval_minutes=_read(rows, "session_monitoring_interval_minutes", session_defaults.polling_interval_minutes),
            remaining_episodes=_read(rows, "session_monitoring_remaining_episodes", session_defaults.remaining_episodes),
            filter_users=_read_user_filter(rows),
            enable_auto_reset=_read(rows, "rolling_auto_reset_enabled", session_defaults.enable_auto_reset),
            inactivity_reset_days=_read(rows, "rolling_inactivity_reset_days", session_defaults.inactivity_reset_days),
            auto_reset_interval_hours=_read(rows, "rolling_auto_reset_interval_hours", session_defaults.auto_reset_interval_hours),
        ),
        webhooks=WebhookSettings(
            upgrade_buffer_time=_read(rows, "upgrade_buffer_time", webhook_defaults.upgrade_buffer_time),
            queue_wait_time=_read(rows, "queue_wait_time", webhook_defaults.queue_wait_time),
            new_episode_threshold=_read(rows, "new_episode_threshold", webhook_defaults.new_episode_threshold),
            pending_retry_interval=_read(rows, "pending_webhook_retry_interval", webhook_defaults.pending_retry_interval),
            pending_max_age=_read(rows, "pending_webhook_max_age", webhook_defaults.pending_max_age),
            pending_cleanup_interval=_read(rows, "pending_webhook_cleanup_interval", webhook_defaults.pending_cleanup_interval),
        ),
    )
