"""
Base database model and session management
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from commerce_sync.config import get_settings
from commerce_sync.utils.logger import log

settings = get_settings()

# Base class for all models
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """
    Create an engine for the canonical store

    Relative SQLite paths are resolved to absolute so cwd changes can't break
    them; in-memory SQLite shares one connection across sessions.
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    if database_url.startswith("sqlite:///") and not database_url.startswith("sqlite:////"):
        rel_path = database_url[len("sqlite:///"):]
        database_url = "sqlite:///" + os.path.abspath(rel_path)

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 60},
            poolclass=NullPool,
            pool_pre_ping=True
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=3,
        max_overflow=5,
        pool_recycle=300,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


# Default engine and session factory
engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine = None):
    """Initialize database tables."""
    # Register tables on Base.metadata
    from commerce_sync.models import tables  # noqa: F401

    target = bind or engine
    Base.metadata.create_all(bind=target)
    log.info(f"Initialized canonical store tables on {target.url.render_as_string(hide_password=True)}")
