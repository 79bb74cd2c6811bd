"""Engine and session factory configuration."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from catalog_importer.core.config import get_settings
from catalog_importer.db.base import Base

settings = get_settings()


def build_engine(database_url: str) -> Engine:
    """Create an engine tuned for long-running imports.

    PostgreSQL gets connection pooling and TCP keepalives; SQLite (local runs,
    tests) only needs to allow use from the batch worker threads.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False},
        )
    # pool_pre_ping: Test connections before using (handles stale connections)
    # pool_recycle: Recycle connections after 30 minutes (prevents timeout)
    return create_engine(
        database_url,
        echo=False,
        future=True,
        poolclass=QueuePool,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_size=5,
        max_overflow=10,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine(settings.database_url)

SessionLocal = build_session_factory(engine)


def init_db(bind: Engine | None = None) -> None:
    """Create engine tables if they do not exist yet."""
    # Import models so they register with the metadata.
    from catalog_importer.db import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)

