"""Database connection and session management."""

from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import Table, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from feedback_rewards.errors import StoreUnavailable
from feedback_rewards.logging_config import get_logger
from feedback_rewards.settings import settings

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str | None = None, timeout_seconds: float | None = None):
        """Initialize database connection.

        Args:
            database_url: Database URL (defaults to settings)
            timeout_seconds: Lock wait / pool checkout bound (defaults to settings)
        """
        self.database_url = database_url or settings.database_url
        timeout = timeout_seconds if timeout_seconds is not None else settings.db_timeout_seconds

        url = make_url(self.database_url)
        engine_kwargs: dict[str, Any] = {"echo": settings.db_echo, "pool_pre_ping": True}
        if url.get_backend_name() == "sqlite":
            # Connections are shared across request threads; the driver waits
            # up to `timeout` seconds on a locked database.
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": timeout}
        else:
            engine_kwargs["pool_timeout"] = timeout
            engine_kwargs["connect_args"] = {"connect_timeout": int(timeout)}

        self.engine = create_engine(self.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        logger.info("database_initialized", url=url.render_as_string(hide_password=True))

    def create_tables(self) -> None:
        """Create all tables in the database."""
        # Registers every model on Base.metadata
        from feedback_rewards.auth import models as _auth_models  # noqa: F401
        from feedback_rewards.gamification import models as _gamification_models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("tables_created")

    def drop_tables(self) -> None:
        """Drop all tables from the database."""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("tables_dropped")

    def dispose(self) -> None:
        """Close all pooled connections."""
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope for database operations.

        Commits on success and rolls back on any exception. Connection
        failures and lock/pool timeouts are re-raised as StoreUnavailable.

        Yields:
            Database session
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except (OperationalError, PoolTimeoutError) as exc:
            session.rollback()
            logger.error("store_unavailable", error=str(exc).splitlines()[0])
            raise StoreUnavailable(str(exc).splitlines()[0]) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def dialect_insert(session: Session, table: Table):
    """Build an INSERT supporting ON CONFLICT for the session's backend.

    Args:
        session: Active session
        table: Table to insert into

    Returns:
        Dialect-specific Insert construct

    Raises:
        NotImplementedError: If the backend has no ON CONFLICT support
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Unsupported database backend: {dialect}")
    return insert(table)


# Global database instance
db = Database()
