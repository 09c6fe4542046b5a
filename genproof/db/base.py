"""Database configuration and base setup for the transactional store."""

import os
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import TimeoutError as StoreTimeoutError
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# Default to a local SQLite database when no URL is configured.
DEFAULT_DATABASE_URL = "sqlite:///./genproof.db"


def _ensure_sync_driver(url: URL) -> URL:
    """Force a synchronous driver for Alembic and the ORM engine."""

    if url.drivername.startswith("postgresql+"):
        if any(token in url.drivername for token in ("async", "aiopg")):
            url = url.set(drivername="postgresql+psycopg")
    elif url.drivername.startswith("sqlite+"):
        if "aiosqlite" in url.drivername:
            url = url.set(drivername="sqlite")

    return url


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Return a database URL with a guaranteed synchronous driver."""

    url = make_url(raw_url or os.getenv("GENPROOF_DATABASE_URL") or DEFAULT_DATABASE_URL)
    # str(url) would mask the password
    return _ensure_sync_driver(url).render_as_string(hide_password=False)


def create_db_engine(database_url: str, timeout: float = 10.0) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": timeout},
            poolclass=StaticPool,
        )
    return create_engine(
        database_url,
        pool_size=20,
        max_overflow=30,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={
            "connect_timeout": int(timeout),
            "options": f"-c statement_timeout={int(timeout * 1000)} "
            f"-c lock_timeout={int(timeout * 1000)}",
        },
    )


class Database:
    """Engine plus session factory for one database.

    SQLite shares a single connection (StaticPool), so transactions on it are
    serialized with a lock. Lock waits on either backend are bounded by
    ``timeout``. Async callers wrap transactions in ``asyncio.to_thread``
    under ``wait_for``; a timeout there stops the caller waiting but the
    worker thread runs on until the database-level timeout ends it, so the
    two share the same bound.
    """

    def __init__(self, url: Optional[str] = None, timeout: float = 10.0):
        self.url = get_database_url(url)
        self.timeout = timeout
        self.engine = create_db_engine(self.url, timeout=timeout)
        self.session_factory = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine
        )
        self._lock = threading.Lock() if self.url.startswith("sqlite") else None

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on any error."""
        if self._lock is not None and not self._lock.acquire(timeout=self.timeout):
            raise StoreTimeoutError(
                f"database busy for more than {self.timeout}s"
            )
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
            if self._lock is not None:
                self._lock.release()

    def create_all(self) -> None:
        """Create every table (tests and local development)."""
        from . import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
