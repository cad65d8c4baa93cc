"""Database session management."""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from scene_engine.config import settings


def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # Background workers touch the database from other threads
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = 5
        kwargs["max_overflow"] = 10
    return create_engine(database_url, **kwargs)


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to ``bind``."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


# Create engine
engine = build_engine(settings.database_url)

# Create session factory
SessionLocal = build_session_factory(engine)


def get_session() -> Generator[Session, None, None]:
    """Get a database session (for FastAPI dependency injection)."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Open one short unit of work on ``factory``: commit on success, roll back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_session_context() -> Generator[Session, None, None]:
    """Get a database session as a context manager (for use outside of FastAPI)."""
    with session_scope(SessionLocal) as session:
        yield session


def init_db(create_tables: bool = False) -> None:
    """Verify database connectivity, optionally creating tables (dev / tests)."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))

    if create_tables:
        from scene_engine.db.models import Base

        Base.metadata.create_all(engine)
