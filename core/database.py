"""
Database connection management with connection pooling.

PostgreSQL in production (row locks via SELECT ... FOR UPDATE);
SQLite is accepted for local runs and tests, where every transaction is
opened with BEGIN IMMEDIATE so writers serialize on the database lock.
"""
import logging

from fastapi import HTTPException
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from core.config import settings
from core.exceptions import EntitlementError, MeteringValidationError

logger = logging.getLogger(__name__)


def _build_database_url() -> str:
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return (
        f"postgresql://{settings.POSTGRES_USER}:"
        f"{settings.POSTGRES_PASSWORD}@"
        f"{settings.POSTGRES_HOST}:"
        f"{settings.POSTGRES_PORT}/"
        f"{settings.POSTGRES_DB}"
    )


DATABASE_URL = _build_database_url()
IS_SQLITE = DATABASE_URL.startswith("sqlite")

if IS_SQLITE and settings.ENVIRONMENT == "production":
    raise RuntimeError("SQLite is forbidden in production. Use a PostgreSQL DATABASE_URL.")

if IS_SQLITE:
    engine = create_engine(
        DATABASE_URL,
        connect_args={
            "check_same_thread": False,
            "timeout": settings.SQLITE_BUSY_TIMEOUT_S,
        },
        echo=settings.DEBUG,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_disable_implicit_transactions(dbapi_conn, connection_record):
        # Hand transaction control to SQLAlchemy so BEGIN/SAVEPOINT are emitted explicitly.
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
else:
    # Create engine with connection pooling
    engine = create_engine(
        DATABASE_URL,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,  # Number of connections to maintain
        max_overflow=settings.DB_MAX_OVERFLOW,  # Additional connections beyond pool_size
        pool_timeout=settings.DB_POOL_TIMEOUT,  # Seconds to wait for connection
        pool_recycle=settings.DB_POOL_RECYCLE,  # Recycle connections after this many seconds
        pool_pre_ping=True,  # Verify connections before using
        echo=settings.DEBUG,  # Log SQL queries in debug mode
    )

    @event.listens_for(engine, "checkout")
    def receive_checkout(dbapi_conn, connection_record, connection_proxy):
        """Log when connection is checked out from pool."""
        logger.debug("Connection checked out from pool")

    @event.listens_for(engine, "checkin")
    def receive_checkin(dbapi_conn, connection_record):
        """Log when connection is returned to pool."""
        logger.debug("Connection returned to pool")

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Prevent lazy loading issues
)

Base = declarative_base()


def get_db() -> Session:
    """
    Request-scoped session: commits when the handler returns, rolls back on
    any exception. Entitlement and validation outcomes are expected traffic
    and are not logged as database errors.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except (HTTPException, EntitlementError, MeteringValidationError):
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Request transaction rolled back: {e}")
        raise
    finally:
        db.close()


def get_db_sync() -> Session:
    """
    Synchronous database session getter for use in scripts and background tasks.

    Note: This does NOT auto-commit or auto-rollback.
    Caller must manage transactions explicitly.
    """
    return SessionLocal()


def check_db_connection() -> bool:
    """
    Check if database connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
