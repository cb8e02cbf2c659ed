"""
Database engine and session management.

SQLite (default, single-file deployments and tests) and PostgreSQL are
supported. The indexer is the only writer; readers share the same engine.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Generator

from perp_indexer.monitoring.logger import get_logger

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
            database_url: sqlite:// or postgresql:// connection string
        """
        if not database_url.startswith(("sqlite", "postgresql")):
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Use a sqlite:/// or postgresql:// connection string."
            )

        self.database_url = database_url

        if database_url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every session sees an empty DB
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, echo=False, **kwargs)
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
            _register_pool_events(self.engine)

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self):
        """Create all tables."""
        # Models register themselves on Base when the repository is imported
        import perp_indexer.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on clean exit, rolls back and re-raises on any exception.

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
    Initialize database with specific URL and create tables.

    Args:
        database_url: Connection string

    Returns:
        Database instance
    """
    db = Database(database_url)
    db.create_all()
    logger.info("DATABASE_READY", dialect=db.engine.dialect.name)
    return db


def _register_pool_events(engine) -> None:
    """Log invalidated pool connections (stale server-side sessions)."""

    @event.listens_for(engine.pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning(
            "POOL_INVALIDATE",
            error=str(exception) if exception else None,
        )
