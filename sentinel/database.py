# sentinel/database.py
"""
Database connection, session management, and table creation.
Uses SQLAlchemy with a local SQLite file by default. All models are
auto-imported here so create_tables() creates every table in one call.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sentinel.config import settings


def build_engine(database_url: str):
    """Create an engine; SQLite connections are shared across the event loop thread."""
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,          # Auto-reconnect if DB connection drops
        echo=False,                  # Set True to log all SQL queries (debug only)
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency — yields a DB session and closes it after request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=None):
    """
    Creates all DB tables on startup. Safe to call multiple times.
    Import all models here so SQLAlchemy knows about them.
    """
    from sentinel.models.security_event import SecurityEvent     # noqa
    from sentinel.models.app_settings import AppSettings         # noqa
    from sentinel.models.sync_queue_item import SyncQueueItem    # noqa

    Base.metadata.create_all(bind=bind or engine)
