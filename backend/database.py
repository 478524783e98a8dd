"""Database configuration for the goalsim result store."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from goalsim.engine.config import EngineSettings, load_settings


def resolve_database_url(settings: Optional[EngineSettings] = None) -> str:
    """Database URL shared with the CLI: ``database.url`` or ``GOALSIM_DATABASE_URL``."""
    return (settings or load_settings()).database_url


DATABASE_URL = resolve_database_url()


def build_engine(url: str) -> Engine:
    """Create an engine; SQLite connections may be shared across worker threads."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, future=True)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

Base = declarative_base()


def init_db(bind: Optional[Engine] = None) -> None:
    """Create database tables if they do not already exist."""
    from . import models  # noqa: F401  # Import models for metadata registration

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Iterator[Session]:
    """FastAPI dependency that provides a database session."""
    with session_scope() as session:
        yield session
