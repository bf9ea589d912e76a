"""Database configuration and session management.

WHAT:
    Engine and session factory construction for the SQL-backed stores.

WHY:
    The engine is built from Settings.DATABASE_URL at startup rather than at
    import time, so tests and workers can each point at their own database.

REFERENCES:
    - clickcredit/models.py: ORM tables
    - clickcredit/stores/sql_store.py: EventStore / WeightsStore on these sessions
"""

from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base


def _normalize_url(url: str) -> str:
    # Heroku-style URL
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def create_db_engine(database_url: str) -> Engine:
    """Create a sync engine with pool settings suited to the backend.

    SQLite engines do not support pool_size/max_overflow; in-memory SQLite
    shares one connection so every session sees the same database.
    """
    database_url = _normalize_url(database_url)
    if database_url.startswith("sqlite"):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


def create_session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create missing tables. Migrations are managed outside this package."""
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    """Session that commits on success and rolls back on error.

    Example:
        with session_scope(factory) as db:
            db.add(row)
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
