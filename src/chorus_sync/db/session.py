"""Database session configuration."""

from __future__ import annotations


from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chorus_sync.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import chorus_sync.models  # noqa: E402,F401


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine, keeping in-memory SQLite on a single shared connection."""
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=echo)
    return create_engine(url, pool_pre_ping=True, echo=echo)


def build_session_factory(url: str, *, create: bool = True) -> sessionmaker[Session]:
    """Return a session factory bound to a fresh engine for ``url``.

    Args:
        url: SQLAlchemy database URL.
        create: Create missing tables on the new engine.

    Returns:
        A configured ``sessionmaker``.
    """
    new_engine = build_engine(url)
    if create:
        Base.metadata.create_all(bind=new_engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=new_engine)


engine = build_engine(settings.database_url, echo=settings.sql_debug)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables() -> None:
    """Create all database tables."""
    Base.metadata.create_all(bind=engine)
