"""
Database engine and session management.

PostgreSQL in production; SQLite is accepted for local runs and tests.
Includes connection-pool observability via SQLAlchemy pool events.
"""
import time
from contextlib import contextmanager
from typing import Generator
from urllib.parse import urlparse

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import Pool, StaticPool

from dlmm_monitor.exceptions import StorageError
from dlmm_monitor.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()

SUPPORTED_SCHEMES = ("postgresql", "sqlite")


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        if not database_url.startswith(SUPPORTED_SCHEMES):
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// or sqlite:// connection string."
            )

        self.database_url = database_url

        if database_url.startswith("sqlite"):
            # Share one connection for in-memory databases across threads
            engine_kwargs = {"connect_args": {"check_same_thread": False}}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, echo=False, **engine_kwargs)
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=5,
                max_overflow=10,
                pool_recycle=3600,
                pool_timeout=30,
            )
            _register_pool_events(self.engine.pool)

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        _log_connection_target(database_url)

    def create_all(self) -> None:
        """Create all tables."""
        # Registers the ORM models on Base.metadata
        import dlmm_monitor.storage.repository  # noqa: F401

        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Table creation failed: {e}") from e

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on success, rolls back on any error. SQLAlchemy errors are
        re-raised as StorageError.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Database operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_db(database_url: str) -> Database:
    """Create a Database and its tables."""
    db = Database(database_url)
    db.create_all()
    return db


def _log_connection_target(database_url: str) -> None:
    """Log connection details without the password."""
    try:
        parsed = urlparse(database_url)
        logger.info(
            "DATABASE_CONNECTION_INIT",
            scheme=parsed.scheme,
            host=parsed.hostname or "local",
            database=parsed.path.lstrip("/") or "memory",
            user=parsed.username or "none",
            has_password=bool(parsed.password),
        )
    except ValueError as e:
        logger.warning("Failed to parse DATABASE_URL for logging", error=str(e))


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners.

    Logs ``POOL_CHECKOUT`` / ``POOL_CHECKIN`` at debug level with hold time,
    and ``POOL_INVALIDATE`` at warning level.
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("POOL_CHECKOUT", checked_out=pool.checkedout())

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = (
            round((time.monotonic() - checkout_time) * 1000, 1)
            if checkout_time is not None
            else None
        )
        _pool_logger.debug("POOL_CHECKIN", held_ms=held_ms)

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning("POOL_INVALIDATE", error=str(exception) if exception else None)
