from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
import os
import logging

from app.core.settings import settings

logger = logging.getLogger("app.database")

# Primary config: DATABASE_URL, or CLOUD_SQL_INSTANCE for the managed Postgres instance
DATABASE_URL = settings.database_url
CLOUD_SQL_INSTANCE = os.getenv("CLOUD_SQL_INSTANCE")  # e.g. project:region:instance


def _pool_kwargs():
    return {
        "poolclass": QueuePool,
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "20")),
        "pool_pre_ping": True,  # Validate connections before use
        "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "3600")),
        "echo": settings.sql_debug,
    }


def _create_engine_with_connector():
    """Create an engine through the Cloud SQL Python Connector.

    Raises RuntimeError when the connector is missing or CLOUD_SQL_INSTANCE is unset.
    """
    try:
        # Import here so the package is optional unless CLOUD_SQL_INSTANCE is used
        from google.cloud.sql.connector import Connector, IPTypes
        import pg8000  # noqa: F401
    except ImportError as e:
        raise RuntimeError(
            "Cloud SQL Python connector is not installed or failed to import: " + str(e)
        )

    if not CLOUD_SQL_INSTANCE:
        raise RuntimeError("CLOUD_SQL_INSTANCE environment variable is not set")

    connector = Connector()
    use_private_ip = os.getenv("CLOUD_SQL_USE_PRIVATE_IP", "false").lower() == "true"

    def getconn():
        return connector.connect(
            CLOUD_SQL_INSTANCE,
            "pg8000",
            ip_type=IPTypes.PRIVATE if use_private_ip else IPTypes.PUBLIC,
            user=os.getenv("DB_USER", "fitconnect"),
            password=os.getenv("DB_PASS", "fitconnect"),
            db=os.getenv("DB_NAME", "fitconnect_db"),
        )

    engine = create_engine("postgresql+pg8000://", creator=getconn, **_pool_kwargs())
    logger.info("Using Cloud SQL Python Connector for instance %s", CLOUD_SQL_INSTANCE)
    return engine


def _create_engine_from_url(url: str):
    if url.startswith("sqlite"):
        # SQLite (local runs) does not take the pool sizing arguments
        return create_engine(url, connect_args={"check_same_thread": False}, echo=settings.sql_debug)
    return create_engine(url, **_pool_kwargs())


# Create engine: prefer Cloud SQL connector when CLOUD_SQL_INSTANCE is provided
if CLOUD_SQL_INSTANCE:
    try:
        engine = _create_engine_with_connector()
    except RuntimeError as e:
        logger.error("Failed to initialize Cloud SQL connector: %s", e)
        logger.info("Falling back to DATABASE_URL")
        engine = _create_engine_from_url(DATABASE_URL)
else:
    engine = _create_engine_from_url(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


async def check_database_health():
    """Check if database is accessible."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database health check: PASSED")
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.error(f"Database health check: FAILED - {str(e)}")
        return {"status": "unhealthy", "database": f"error: {str(e)}"}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Session factory handed to the automation engine (overridable in tests)."""
    return SessionLocal
