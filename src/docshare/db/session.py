"""Database engine and session factory."""

import logging
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from docshare.core.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def create_db_engine(database_url: str, echo: bool = False, **kwargs) -> Engine:
    """Create an engine, preparing SQLite files and foreign key enforcement.

    Args:
        database_url: SQLAlchemy database URL
        echo: Log emitted SQL
        **kwargs: Passed through to ``create_engine``

    Returns:
        Configured engine
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, echo=echo, **kwargs)

    if url.get_backend_name() == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = create_db_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def get_session_factory() -> sessionmaker:
    """FastAPI dependency returning the session factory."""
    return SessionLocal


def init_db(bind: Engine | None = None) -> None:
    """Create all tables that do not exist yet."""
    # Import models so they register on Base.metadata
    from docshare.db import models  # noqa: F401

    target = bind or engine
    Base.metadata.create_all(target)
    logger.info("Database schema ensured", extra={"database": target.url.render_as_string(hide_password=True)})
