"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the freight ledger core.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import OperationalError, DisconnectionError, TimeoutError as PoolTimeoutError
from config import Config
from models import Base
from utils.ledger_exceptions import TransientStoreFailure

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

IS_SQLITE = Config.DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    # SQLite ignores FOR UPDATE; local development and tests only
    engine = create_engine(
        Config.DATABASE_URL,
        echo=Config.DATABASE_ECHO,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        Config.DATABASE_URL,
        poolclass=QueuePool,
        pool_size=Config.DB_POOL_SIZE,
        max_overflow=Config.DB_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=Config.DB_POOL_TIMEOUT,
        echo=Config.DATABASE_ECHO,
        connect_args={
            "connect_timeout": 10,  # Fail fast on slow connections
            "application_name": "freight_ledger",
            "options": f"-c lock_timeout={Config.DB_LOCK_TIMEOUT_SECONDS * 1000}",
        },
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


if IS_SQLITE:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def is_transient_database_error(error: Exception) -> bool:
    """Errors whose outcome is unknown and which are safe to retry with the same key"""
    return isinstance(error, (OperationalError, DisconnectionError, PoolTimeoutError))


@contextmanager
def managed_session(session_factory=None):
    """Session scope that commits on success and rolls back on error"""
    factory = session_factory or SessionLocal
    session = factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        if is_transient_database_error(e):
            logger.error(f"❌ DATABASE_TRANSIENT_FAILURE: {e}")
            raise TransientStoreFailure(f"Database operation failed: {e}") from e
        raise
    finally:
        session.close()


def get_session() -> Session:
    """Get a new database session"""
    return SessionLocal()


def create_tables(bind=None):
    """Create all database tables"""
    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("✅ DATABASE_TABLES: All ledger tables created")
    except Exception as e:
        logger.error(f"❌ DATABASE_TABLES: Creation failed: {e}")
        raise


def test_connection() -> bool:
    """Check that the configured database answers a trivial query"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("✅ DATABASE_CONNECTION: OK")
        return True
    except OperationalError as e:
        logger.error(f"❌ DATABASE_CONNECTION: Failed: {e}")
        return False
