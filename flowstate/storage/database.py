"""Database connection and session management."""

from typing import Dict, Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_config

# Engines are cached per URL
_engines: Dict[str, Engine] = {}

# Base class for all database models
Base = declarative_base()


def get_database_engine(database_url: Optional[str] = None,
                        echo: Optional[bool] = None,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create the database engine for a URL."""
    config = get_config()
    if database_url is None:
        database_url = config.database_url
    if echo is None:
        echo = config.database_echo

    engine = _engines.get(database_url)
    if engine is not None:
        return engine

    # Default connect args for SQLite
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {}

    if database_url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        engine = create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args=connect_args,
            pool_pre_ping=True
        )

    _engines[database_url] = engine
    return engine


def reset_database_engine():
    """Dispose every cached engine (mainly for testing)."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()


def get_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    """Create a session factory bound to the engine for ``database_url``."""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_database_engine(database_url))


def get_db():
    """Dependency to get database session."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the tables on Base.metadata
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine or get_database_engine())
