"""
SQLAlchemy engine and session setup shared by all bridge models.
"""
import os
from pathlib import Path
from typing import Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

# One engine per database URL
_engines: Dict[str, Engine] = {}


def get_database_url() -> str:
    """Get database URL from environment or use default"""
    return os.environ.get('DATABASE_URL', 'sqlite:///./data/puppet_bridge.db')


def get_engine(url: Optional[str] = None) -> Engine:
    """Get SQLAlchemy engine with SQLite or PostgreSQL support"""
    url = url or get_database_url()
    engine = _engines.get(url)
    if engine is not None:
        return engine

    if url.startswith('sqlite'):
        database = make_url(url).database
        if database and database != ':memory:':
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False  # Set to True for SQL debugging
        )
    else:
        # PostgreSQL configuration (for production)
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_recycle=3600,  # Recycle connections after 1 hour
        )

    _engines[url] = engine
    return engine


def get_session_maker(url: Optional[str] = None):
    """Get session maker for creating database sessions"""
    # expire_on_commit=False lets callers use rows after the session closes
    return sessionmaker(
        bind=get_engine(url),
        expire_on_commit=False,
        autoflush=True,
        autocommit=False
    )


def init_database(url: Optional[str] = None):
    """Initialize database tables"""
    # Model modules register their tables on Base when imported
    from src.models import remote_user  # noqa: F401
    Base.metadata.create_all(get_engine(url))


def dispose_engines():
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()
