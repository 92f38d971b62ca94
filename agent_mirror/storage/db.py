"""
Database engine and session management for the order ledger.

SQLite is the default backend (a single file next to the process);
any SQLAlchemy URL works for shared deployments.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import Pool, StaticPool
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Dict, Any

from agent_mirror.monitoring.logger import get_logger

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
            database_url: SQLAlchemy connection string
        """
        self.database_url = database_url
        url = make_url(database_url)

        if url.get_backend_name() == "sqlite":
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
                self.engine = create_engine(
                    database_url,
                    echo=False,
                    connect_args={"check_same_thread": False},
                )
            else:
                # One shared connection, otherwise every session sees an empty database
                self.engine = create_engine(
                    database_url,
                    echo=False,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=10,
                pool_recycle=3600,
                pool_timeout=30,
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        _register_pool_events(self.engine.pool)

    def create_all(self):
        """Create all tables."""
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self):
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Yields:
            SQLAlchemy Session

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_db(database_url: str) -> Database:
    """
    Create a database for the given URL with all ledger tables in place.

    Args:
        database_url: SQLAlchemy connection string

    Returns:
        Database instance
    """
    # Registers the ORM models on Base.metadata
    import agent_mirror.storage.ledger  # noqa: F401

    db = Database(database_url)
    db.create_all()
    logger.info("LEDGER_DATABASE_INIT", backend=make_url(database_url).get_backend_name())
    return db


def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners.

    Logs ``POOL_CHECKOUT`` at debug level and ``POOL_INVALIDATE`` as a warning.
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        _pool_logger.debug("POOL_CHECKOUT")

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning(
            "POOL_INVALIDATE",
            error=str(exception) if exception else None,
        )


def get_pool_status(db: Database) -> Dict[str, Any]:
    """Return a snapshot of connection-pool metrics where the pool exposes them."""
    pool = db.engine.pool
    status: Dict[str, Any] = {"pool_class": type(pool).__name__}
    for name in ("size", "checkedout", "overflow", "checkedin"):
        metric = getattr(pool, name, None)
        if callable(metric):
            status[name] = metric()
    return status
