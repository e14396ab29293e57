"""
Persistence for rolling monitored shows.

A show has one master row (plex_user_id NULL) and optionally one row per
Plex user. Operations touching several rows of a show run in a single
transaction and lock the anchor row first.
"""
import logging
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rollarr.database import SessionLocal
from rollarr.models.rolling_monitored_show import (
    MONITORING_TYPES,
    RollingMonitoredShow,
    utcnow,
)


logger = logging.getLogger(__name__)


class RollingShowError(Exception):
    pass


class RollingShowStore:

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def create(
        self,
        sonarr_series_id: int,
        sonarr_instance_id: int,
        show_title: str,
        monitoring_type: str,
        tvdb_id: Optional[str] = None,
        imdb_id: Optional[str] = None,
        current_monitored_season: int = 1,
        plex_user_id: Optional[str] = None,
        plex_username: Optional[str] = None,
    ) -> int:
        """Insert a rolling show, raises RollingShowError on failure"""
        if monitoring_type not in MONITORING_TYPES:
            raise RollingShowError(f"Unknown monitoring type '{monitoring_type}'")

        db = self._session_factory()
        try:
            now = utcnow()
            show = RollingMonitoredShow(
                sonarr_series_id=sonarr_series_id,
                sonarr_instance_id=sonarr_instance_id,
                tvdb_id=str(tvdb_id) if tvdb_id else None,
                imdb_id=imdb_id,
                show_title=show_title,
                monitoring_type=monitoring_type,
                current_monitored_season=current_monitored_season,
                last_watched_season=0,
                last_watched_episode=0,
                plex_user_id=plex_user_id,
                plex_username=plex_username,
                last_session_date=now,
                created_at=now,
                updated_at=now,
                last_updated_at=now,
            )
            db.add(show)
            db.commit()
            logger.info(f"✓ Created rolling monitored show: {show_title} (ID: {show.id})")
            return show.id
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Error creating rolling monitored show {show_title}: {e}", exc_info=True)
            raise RollingShowError("Failed to create rolling monitored show") from e
        finally:
            db.close()

    def create_or_find_user_entry(self, master_id: int, plex_user_id: str, plex_username: str) -> int:
        """
        Per-user copy of a master row, or the existing one for that user

        New per-user rows always start at season 1. A concurrent insert for
        the same user hits the unique constraint and the existing row is
        returned instead.
        """
        db = self._session_factory()
        try:
            master = db.get(RollingMonitoredShow, master_id)
            if master is None:
                raise RollingShowError(f"Rolling monitored show {master_id} not found")

            key = (master.sonarr_series_id, master.sonarr_instance_id)
            now = utcnow()
            entry = RollingMonitoredShow(
                sonarr_series_id=master.sonarr_series_id,
                sonarr_instance_id=master.sonarr_instance_id,
                tvdb_id=master.tvdb_id,
                imdb_id=master.imdb_id,
                show_title=master.show_title,
                monitoring_type=master.monitoring_type,
                current_monitored_season=1,
                last_watched_season=0,
                last_watched_episode=0,
                plex_user_id=plex_user_id,
                plex_username=plex_username,
                last_session_date=now,
                created_at=now,
                updated_at=now,
                last_updated_at=now,
            )
            db.add(entry)
            try:
                db.commit()
                logger.info(f"✓ Created per-user rolling entry for {master.show_title} ({plex_username}, ID: {entry.id})")
                return entry.id
            except IntegrityError:
                db.rollback()
                logger.debug(f"Per-user entry for {master.show_title} ({plex_username}) exists, looking it up")

            existing = (
                db.query(RollingMonitoredShow)
                .filter(
                    RollingMonitoredShow.sonarr_series_id == key[0],
                    RollingMonitoredShow.sonarr_instance_id == key[1],
                    RollingMonitoredShow.plex_user_id == plex_user_id,
                )
                .first()
            )
            if existing is None:
                raise RollingShowError(f"Per-user entry for user {plex_user_id} could not be created or found")
            existing.last_updated_at = now
            existing.updated_at = now
            db.commit()
            return existing.id
        finally:
            db.close()

    def list_all(self) -> List[RollingMonitoredShow]:
        db = self._session_factory()
        try:
            return db.query(RollingMonitoredShow).order_by(RollingMonitoredShow.show_title).all()
        except Exception as e:
            logger.error(f"Error listing rolling monitored shows: {e}", exc_info=True)
            return []
        finally:
            db.close()

    def get_by_id(self, show_id: int) -> Optional[RollingMonitoredShow]:
        db = self._session_factory()
        try:
            return db.get(RollingMonitoredShow, show_id)
        except Exception as e:
            logger.error(f"Error loading rolling monitored show {show_id}: {e}")
            return None
        finally:
            db.close()

    def get_by_identity(
        self,
        tvdb_id: Optional[str],
        title: str,
        plex_user_id: Optional[str] = None,
    ) -> Optional[RollingMonitoredShow]:
        """
        Find a rolling show by TVDB id, or by exact title when no TVDB id is known

        With a user id the user's own row wins; otherwise (or if the user has
        none) the master row is returned.
        """
        db = self._session_factory()
        try:
            if tvdb_id:
                identity = RollingMonitoredShow.tvdb_id == str(tvdb_id)
            else:
                identity = RollingMonitoredShow.show_title == title

            query = db.query(RollingMonitoredShow).filter(identity).order_by(RollingMonitoredShow.id)

            if plex_user_id:
                own = query.filter(RollingMonitoredShow.plex_user_id == str(plex_user_id)).first()
                if own is not None:
                    return own

            return query.filter(RollingMonitoredShow.plex_user_id.is_(None)).first()
        except Exception as e:
            logger.error(f"Error looking up rolling monitored show {title}: {e}", exc_info=True)
            return None
        finally:
            db.close()

    def _update(self, show_id: int, values: Dict, action: str) -> bool:
        db = self._session_factory()
        try:
            now = utcnow()
            values = {**values, "updated_at": now, "last_updated_at": now}
            updated = (
                db.query(RollingMonitoredShow)
                .filter(RollingMonitoredShow.id == show_id)
                .update(values, synchronize_session=False)
            )
            db.commit()
            return updated > 0
        except Exception as e:
            db.rollback()
            logger.error(f"Error updating rolling show {action} for {show_id}: {e}", exc_info=True)
            return False
        finally:
            db.close()

    def update_progress(self, show_id: int, season: int, episode: int) -> bool:
        return self._update(
            show_id,
            {
                "last_watched_season": season,
                "last_watched_episode": episode,
                "last_session_date": utcnow(),
            },
            "progress",
        )

    def update_monitored_season(self, show_id: int, season: int) -> bool:
        return self._update(show_id, {"current_monitored_season": season}, "monitored season")

    def delete(self, show_id: int) -> bool:
        db = self._session_factory()
        try:
            deleted = db.query(RollingMonitoredShow).filter(RollingMonitoredShow.id == show_id).delete()
            db.commit()
            return deleted > 0
        except Exception as e:
            db.rollback()
            logger.error(f"Error deleting rolling monitored show {show_id}: {e}", exc_info=True)
            return False
        finally:
            db.close()

    @staticmethod
    def _lock_anchor(db: Session, show_id: int) -> Optional[RollingMonitoredShow]:
        # FOR UPDATE is a no-op on SQLite, which serialises writers anyway
        return (
            db.query(RollingMonitoredShow)
            .filter(RollingMonitoredShow.id == show_id)
            .with_for_update()
            .first()
        )

    def delete_all_entries(self, show_id: int) -> int:
        """Delete the master and every per-user row of the show show_id belongs to"""
        db = self._session_factory()
        try:
            with db.begin():
                anchor = self._lock_anchor(db, show_id)
                if anchor is None:
                    return 0

                deleted = (
                    db.query(RollingMonitoredShow)
                    .filter(
                        RollingMonitoredShow.sonarr_series_id == anchor.sonarr_series_id,
                        RollingMonitoredShow.sonarr_instance_id == anchor.sonarr_instance_id,
                    )
                    .delete(synchronize_session=False)
                )

            logger.info(
                f"🗑 Deleted {deleted} rolling entries for {anchor.show_title} "
                f"(series_id: {anchor.sonarr_series_id}, instance_id: {anchor.sonarr_instance_id})"
            )
            return deleted
        except Exception as e:
            logger.error(f"Error deleting all rolling entries for {show_id}: {e}", exc_info=True)
            return 0
        finally:
            db.close()

    def reset_to_original(self, show_id: int) -> int:
        """
        Drop all per-user rows and rewind the master row to season 1

        Returns: number of per-user rows deleted
        """
        db = self._session_factory()
        try:
            with db.begin():
                anchor = self._lock_anchor(db, show_id)
                if anchor is None:
                    return 0

                same_show = (
                    RollingMonitoredShow.sonarr_series_id == anchor.sonarr_series_id,
                    RollingMonitoredShow.sonarr_instance_id == anchor.sonarr_instance_id,
                )
                deleted = (
                    db.query(RollingMonitoredShow)
                    .filter(*same_show, RollingMonitoredShow.plex_user_id.isnot(None))
                    .delete(synchronize_session=False)
                )

                now = utcnow()
                db.query(RollingMonitoredShow).filter(
                    *same_show, RollingMonitoredShow.plex_user_id.is_(None)
                ).update(
                    {
                        "current_monitored_season": 1,
                        "last_watched_season": 0,
                        "last_watched_episode": 0,
                        "updated_at": now,
                        "last_updated_at": now,
                    },
                    synchronize_session=False,
                )

            logger.info(f"↺ Reset {anchor.show_title} to original state: removed {deleted} user entries")
            return deleted
        except Exception as e:
            logger.error(f"Error resetting rolling show {show_id}: {e}", exc_info=True)
            return 0
        finally:
            db.close()

    def get_inactive(self, days: int) -> List[RollingMonitoredShow]:
        """
        Shows whose rows (master and all users) were all last updated before now - days

        One row per show is returned, the master row where there is one.
        """
        db = self._session_factory()
        try:
            cutoff = utcnow() - timedelta(days=days)
            rows = db.query(RollingMonitoredShow).order_by(RollingMonitoredShow.last_updated_at).all()

            grouped: Dict[Tuple[int, int], List[RollingMonitoredShow]] = {}
            for row in rows:
                grouped.setdefault((row.sonarr_series_id, row.sonarr_instance_id), []).append(row)

            inactive = []
            for shows in grouped.values():
                if any(s.last_updated_at and s.last_updated_at >= cutoff for s in shows):
                    continue
                master = next((s for s in shows if s.plex_user_id is None), None)
                inactive.append(master or shows[0])
            return inactive
        except Exception as e:
            logger.error(f"Error getting inactive rolling shows: {e}", exc_info=True)
            return []
        finally:
            db.close()

    def reset_inactive(self, days: int) -> int:
        """Reset every show inactive for at least days, returns how many were reset"""
        inactive = self.get_inactive(days)
        for show in inactive:
            self.reset_to_original(show.id)
        if inactive:
            logger.info(f"↺ Auto-reset {len(inactive)} rolling show(s) inactive for {days}+ days")
        return len(inactive)
