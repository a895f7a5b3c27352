"""
Database engine and session management.

PostgreSQL in production; SQLite for local runs and tests.
Includes connection-pool observability via SQLAlchemy pool events.
"""
import time
from contextlib import contextmanager
from typing import Any, Dict, Generator
from urllib.parse import urlparse

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import Pool

from keeper.exceptions import StorageError
from keeper.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        if not database_url.startswith(("postgresql", "sqlite")):
            raise ValueError(
                f"Unsupported database: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// or sqlite:// connection string."
            )

        self.database_url = database_url
        self.is_postgres = database_url.startswith("postgresql")

        if self.is_postgres:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=5,
                max_overflow=10,
                pool_recycle=3600,
                pool_timeout=30,
            )
        else:
            # Store calls run in worker threads
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        _register_pool_events(self.engine.pool)

    def create_all(self) -> None:
        """Create all tables."""
        # Import registers the ORM models on Base.metadata
        import keeper.storage.repository  # noqa: F401

        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Table creation failed: {e}") from e

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions. Commits on success.

        Yields:
            SQLAlchemy Session

        Raises:
            StorageError: wrapping any SQLAlchemy failure
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def identity(self) -> Dict[str, Any]:
        """Connection target without the password, for logging."""
        parsed = urlparse(self.database_url)
        if not self.is_postgres:
            return {"backend": "sqlite", "path": parsed.path or ":memory:"}
        return {
            "backend": "postgresql",
            "host": parsed.hostname or "unknown",
            "port": parsed.port or 5432,
            "database": parsed.path.lstrip("/") or "unknown",
            "user": parsed.username or "unknown",
            "has_password": bool(parsed.password),
        }

    def close(self) -> None:
        """Dispose of all pooled connections."""
        self.engine.dispose()
        logger.info("DATABASE_CLOSED", **self.identity())


def init_db(database_url: str) -> Database:
    """
    Create a Database and its tables.

    Args:
        database_url: postgresql:// or sqlite:// connection string

    Returns:
        Database instance
    """
    db = Database(database_url)
    logger.info("DATABASE_CONNECTION_INIT", **db.identity())
    db.create_all()
    return db


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners for observability.

    Logs:
      - ``POOL_CHECKOUT``:   A connection was checked out.
      - ``POOL_CHECKIN``:    A connection was returned (with hold time).
      - ``POOL_INVALIDATE``: A connection was invalidated (e.g. stale).
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("POOL_CHECKOUT")

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
        _pool_logger.warning(
            "POOL_INVALIDATE",
            error=str(exception) if exception else None,
        )
