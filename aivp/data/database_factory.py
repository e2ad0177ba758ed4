"""
Database factory for the research store.
One engine and sessionmaker per process; transactions go through managed_session,
which turns store outages into StoreUnavailableError.
"""

import logging
import re
import threading
from contextlib import contextmanager
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from aivp.exceptions import StoreUnavailableError
from config.config import config

logger = logging.getLogger(__name__)

_PASSWORD_PATTERN = re.compile(r"(://[^:/@]+:)([^@]+)(@)")


def engine_options(dsn: str) -> dict[str, Any]:
    """Keyword arguments for create_engine; SQLite gets one shared connection instead of a pool."""
    if dsn.startswith("sqlite"):
        return {
            "echo": config.database.echo,
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "echo": config.database.echo,
        "pool_pre_ping": True,
        "pool_size": config.database.pool_size,
        "max_overflow": config.database.max_overflow,
        "pool_timeout": config.persistence.pool_timeout_seconds,
    }


def setup_connection_events(engine: Engine) -> None:
    """Per-connection settings: foreign keys on SQLite, UTC and statement timeout on PostgreSQL."""
    dialect = engine.dialect.name

    @event.listens_for(engine, "connect")
    def configure_connection(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            if dialect == "sqlite":
                cursor.execute("PRAGMA foreign_keys=ON")
            elif dialect == "postgresql":
                cursor.execute("SET timezone TO 'UTC'")
                cursor.execute(f"SET statement_timeout = {int(config.persistence.statement_timeout_ms)}")
        finally:
            cursor.close()


def is_store_outage(error: BaseException) -> bool:
    """True for lost connections, pool or statement timeouts and similar transient failures."""
    if isinstance(error, (OperationalError, PoolTimeoutError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


@contextmanager
def managed_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Open a session, commit on success and roll back on error.

    Transient store failures are re-raised as StoreUnavailableError so callers
    can retry; every other error propagates unchanged.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        if is_store_outage(e):
            logger.error("Research store unavailable: %s", e)
            raise StoreUnavailableError("transaction", type(e).__name__, cause=e) from e
        logger.debug("Transaction rolled back after %s", type(e).__name__)
        raise
    finally:
        session.close()


class DatabaseFactory:
    """Process-wide owner of the research store engine."""

    _instance: Optional["DatabaseFactory"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "DatabaseFactory":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance.dsn = None
                instance._engine = None
                instance._sessionmaker = None
                cls._instance = instance
        return cls._instance

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    def initialize(self, dsn: Optional[str] = None) -> None:
        """Create the engine on first call; later calls are no-ops."""
        with self._lock:
            if self.initialized:
                return

            target = dsn or config.database.dsn
            engine = create_engine(target, **engine_options(target))
            setup_connection_events(engine)

            self.dsn = target
            self._engine = engine
            self._sessionmaker = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
            logger.info("Research store connected: %s", self._mask_dsn(target))

    @staticmethod
    def _mask_dsn(dsn: str) -> str:
        return _PASSWORD_PATTERN.sub(r"\1****\3", dsn)

    @property
    def engine(self) -> Engine:
        self.initialize()
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        self.initialize()
        return self._sessionmaker

    def session(self):
        """Transactional session scope over the shared sessionmaker."""
        return managed_session(self.session_factory)

    def create_all_tables(self) -> None:
        from .models import Base

        Base.metadata.create_all(bind=self.engine)
        logger.info("Research tables ensured")

    def health_check(self) -> bool:
        try:
            with self.session() as session:
                session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Research store health check failed: %s", e)
            return False
        return True

    def close(self) -> None:
        """Dispose the engine so the next use reconnects, possibly to another DSN."""
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                logger.info("Research store connections closed")
            self.dsn = None
            self._engine = None
            self._sessionmaker = None


# Global factory instance
_db_factory = DatabaseFactory()


def setup_database(dsn: Optional[str] = None) -> None:
    """Connect, create tables and verify the store at application startup."""
    _db_factory.initialize(dsn)
    _db_factory.create_all_tables()
    if not _db_factory.health_check():
        raise RuntimeError("Database health check failed")


def health_check() -> bool:
    return _db_factory.health_check()


def close_database() -> None:
    _db_factory.close()


def database_transaction():
    """Default session factory for the logic layer."""
    return _db_factory.session()
