"""Database utilities for SQLAlchemy and Alembic."""
from __future__ import annotations

from typing import Any, Dict, Generator

from sqlalchemy import Engine, create_engine, inspect
from sqlalchemy.orm import Session, sessionmaker

from .config import settings


def _engine_options(url: str) -> Dict[str, Any]:
    options: Dict[str, Any] = {"pool_pre_ping": True, "future": True}
    if url.startswith("sqlite"):
        # Celery workers and the API share one file database in local setups.
        options["connect_args"] = {"check_same_thread": False}
    return options


def _create_engine() -> Engine:
    """Create the SQLAlchemy engine using application settings."""

    return create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))


ENGINE: Engine = _create_engine()
SessionLocal = sessionmaker[
    Session
](bind=ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)


def get_session() -> Generator[Session, None, None]:
    """Request-scoped session; commits on success and rolls back on error."""

    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def table_exists(session: Session, table_name: str) -> bool:
    """Return whether ``table_name`` exists on the session's connection."""

    return inspect(session.connection()).has_table(table_name)
