"""
Database engine and transactional session management.

Provides a small wrapper around a SQLAlchemy engine so that every component
receives its database explicitly instead of reaching for a module global.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from loguru import logger
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

try:
    from ..config import config
    from ..models.records import Base
except ImportError:
    from src.config import config
    from src.models.records import Base


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Owns an engine and a session factory.

    Usage:
        db = Database("sqlite://")
        db.init_db()
        with db.session_scope() as session:
            session.add(record)
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        """
        Initialize database.

        Args:
            url: SQLAlchemy URL (default from config). ``sqlite://`` gives a
                private in-memory database shared across threads.
            echo: Echo SQL statements (default from config)
        """
        self.url = url or config.database.url
        echo = config.database.echo if echo is None else echo

        kwargs = {}
        if self.url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool

        self.engine: Engine = create_engine(self.url, echo=echo, future=True, **kwargs)

        if self.url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def init_db(self) -> None:
        """Create all tables (idempotent)."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables initialized")

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def new_session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def init_db(url: Optional[str] = None) -> Database:
    """Create a Database for ``url`` (default from config) and its tables."""
    db = Database(url)
    db.init_db()
    return db
