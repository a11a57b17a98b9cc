"""
Database Session Management
===========================

Connection handling for the local store with SQLAlchemy.
"""

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from .models import Base

_engine = None
_engine_url = None

# Bound lazily once DATABASE_URL is known
SessionLocal = sessionmaker(autoflush=False)


def _current_database_url() -> str:
    # Read at call time so tests can point DATABASE_URL at a temporary file
    return os.environ.get("DATABASE_URL", "sqlite:///./casesync.db")


def _create_engine_for_url(database_url: str):
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=os.environ.get("SQL_ECHO", "false").lower() == "true",
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        connect_args={
            "connect_timeout": int(os.environ.get("DB_CONNECT_TIMEOUT", "5")),
        },
        echo=os.environ.get("SQL_ECHO", "false").lower() == "true",
    )


def get_engine(database_url: str = None):
    """Get the SQLAlchemy engine"""
    global _engine, _engine_url
    database_url = database_url or _current_database_url()
    if _engine is None or _engine_url != database_url:
        _engine = _create_engine_for_url(database_url)
        _engine_url = database_url
        SessionLocal.configure(bind=_engine)
    return _engine


def reset_engine():
    """Reset engine/sessionmaker (primarily for tests)."""
    global _engine, _engine_url
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _engine_url = None
    SessionLocal.configure(bind=None)


def init_db(database_url: str = None):
    """Initialize database tables"""
    engine = get_engine(database_url)
    Base.metadata.create_all(bind=engine)
    return engine
