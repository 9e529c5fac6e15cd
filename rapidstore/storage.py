import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from rapidstore.config import get_settings

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def create_storage_engine(database_url: Optional[str] = None, **kwargs) -> Engine:
    """
    Create a SQLAlchemy engine for the store.

    Args:
        database_url: Database URL; defaults to settings.DATABASE_URL
        **kwargs: Extra keyword arguments passed to create_engine

    Returns:
        Engine bound to the database
    """
    url = database_url or get_settings().DATABASE_URL
    logger.debug(f"Creating storage engine for URL: {url}")

    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        # check_same_thread=False lets a UI thread and a sync thread share the handle
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        kwargs["connect_args"] = connect_args

    engine = create_engine(url, echo=False, **kwargs)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ships with foreign key enforcement off, per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@lru_cache()
def get_engine() -> Engine:
    """
    Get the process-wide engine, created lazily on first use.
    """
    return create_storage_engine()


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all static tables.

    Form data tables are not created here; see SchemaRegistry.provision_form_table.
    """
    logger.debug(f"Initializing database with URL: {engine.url}")
    try:
        # Import models to register them with Base.metadata
        from rapidstore import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(engine: Engine) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every static table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        from rapidstore import models  # noqa: F401

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

            existing = set(inspect(conn).get_table_names())
            missing = [name for name in Base.metadata.tables if name not in existing]
            if missing:
                logger.error(f"Database schema not applied: missing tables {missing}")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
