"""Database setup and helpers (SQLite default, Postgres-ready)."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from mcplink.config import get_settings
from mcplink.db.models import Base

# Lazy-initialized globals
_ENGINE: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> str:
    return get_settings().resolved_database_url


def _create_engine() -> Engine:
    db_url = get_database_url()
    connect_args = {}
    if db_url.startswith("sqlite"):
        # Supervisor retry threads share the engine; wait out writer locks.
        connect_args = {"check_same_thread": False, "timeout": 15}
        if db_url.startswith("sqlite:///") and db_url != "sqlite:///:memory:":
            db_path = db_url.replace("sqlite:///", "", 1)
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(db_url, connect_args=connect_args)


def get_engine() -> Engine:
    """Get or create the database engine (lazy initialization)."""
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = _create_engine()
    return _ENGINE


def get_session_factory() -> sessionmaker:
    """Get or create the session factory (lazy initialization)."""
    global _SessionLocal
    if _SessionLocal is None:
        # Records are handed to other threads after the session closes.
        _SessionLocal = sessionmaker(
            autoflush=False, expire_on_commit=False, bind=get_engine()
        )
    return _SessionLocal


def reset_engine() -> None:
    """Reset engine and session factory (useful for tests)."""
    global _ENGINE, _SessionLocal
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    _SessionLocal = None


def init_db() -> None:
    """Create the tool server table if it doesn't exist."""
    Base.metadata.create_all(bind=get_engine())


@contextmanager
def get_db() -> Iterator[Session]:
    """Provide a session that is always closed afterwards."""
    session_factory = get_session_factory()
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
