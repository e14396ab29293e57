import logging
import os
import time

from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


logger = logging.getLogger(__name__)


DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("❌ DATABASE_URL environment variable not set!")

IS_SQLITE = DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    # One shared connection so sqlite:// keeps its tables across sessions
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True, pool_recycle=3600)

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

Base = declarative_base()


def _import_models():
    """Register every model on Base.metadata"""
    from rollarr.models.config import Config  # noqa: F401
    from rollarr.models.sonarr_instance import SonarrInstance  # noqa: F401
    from rollarr.models.rolling_monitored_show import RollingMonitoredShow  # noqa: F401


def _create_postgres_database():
    url = make_url(DATABASE_URL)
    admin = create_engine(url.set(database="postgres"), isolation_level="AUTOCOMMIT")
    try:
        with admin.connect() as conn:
            conn.execute(text(f'CREATE DATABASE "{url.database}" OWNER "{url.username}"'))
        logger.info(f"✓ Created database {url.database}")
    finally:
        admin.dispose()


def ensure_database_exists():
    """Connect once; create the PostgreSQL database when the server reports it missing"""
    if IS_SQLITE:
        return

    try:
        with engine.connect():
            logger.info("✓ Database connection successful")
    except (OperationalError, ProgrammingError) as e:
        if "does not exist" not in str(e):
            raise
        logger.info("Database missing, creating it...")
        try:
            _create_postgres_database()
        except Exception as create_error:
            logger.error(f"❌ Could not create database: {create_error}")
            raise


def init_db(attempts: int = 60, delay: float = 1.0):
    """Wait for the database server, then create all tables"""
    _import_models()

    for attempt in range(1, attempts + 1):
        try:
            ensure_database_exists()
            Base.metadata.create_all(bind=engine)
        except Exception as e:
            if attempt == attempts:
                logger.error(f"❌ Database initialization failed after {attempts} attempts: {e}")
                raise
            logger.info(f"Database not ready ({attempt}/{attempts}), retrying in {delay}s")
            time.sleep(delay)
        else:
            logger.info("✓ Database tables ready")
            return
