"""
Database engine, session factory and declarative base
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.orm import declarative_base, sessionmaker
from pulse_sync.config import get_settings


def create_db_engine(database_url: str):
    """
    Build an engine for ``database_url``.

    In-memory SQLite shares one connection (StaticPool) so every session
    sees the same database; file SQLite paths are made absolute so a cwd
    change can't point the engine at a new file.
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    if database_url.startswith("sqlite:///") and not database_url.startswith("sqlite:////"):
        database_url = "sqlite:///" + os.path.abspath(database_url[len("sqlite:///"):])

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 60},
            poolclass=NullPool,
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=5,
        pool_recycle=300,
    )


engine = create_db_engine(get_settings().database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None):
    """Create any missing tables."""
    # Import models so they register on Base.metadata
    from pulse_sync.models import metric  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
