"""SQLAlchemy database models for the local note cache."""
import datetime
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, Index, Integer, String, Text,
                        create_engine, event, inspect, text)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from marlin_sync.config import config
from marlin_sync.models.schema import SyncState

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBSpace(Base):
    """Database model for a space."""
    __tablename__ = "spaces"
    name = Column(String(255), primary_key=True)
    repo_name = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    is_private = Column(Boolean, default=True, nullable=False)
    owner = Column(String(255), nullable=True)
    updated_at = Column(DateTime, default=datetime.datetime.now, nullable=False, index=True)
    last_synced_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of space."""
        return f"<Space(name='{self.name}', repo='{self.repo_name}')>"


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(64), primary_key=True)
    space = Column(String(255), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=datetime.datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.datetime.now, nullable=False)
    deleted = Column(Boolean, default=False, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)
    purge_requested = Column(Boolean, default=False, nullable=False)
    # Owned by the sync engine
    version_token = Column(String(64), nullable=True)
    sync_state = Column(
        String(16), default=SyncState.PENDING.value, nullable=False, index=True
    )
    error_message = Column(Text, nullable=True)
    revision = Column(Integer, default=1, nullable=False)
    synced_revision = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_notes_space_updated", "space", "updated_at"),
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', space='{self.space}', title='{self.title}')>"


def init_db(db_url: Optional[str] = None) -> Engine:
    """Initialize the database with hardened configuration.

    Applies SQLite settings for crash resilience:
    - WAL (Write-Ahead Logging) mode so readers never block the writer
    - NORMAL synchronous mode (good balance of safety vs speed)
    - busy timeout so concurrent sync workers wait instead of failing

    An in-memory URL (``sqlite://``) gets a StaticPool so every session
    sees the same database.
    """
    url = db_url or config.get_db_url()
    in_memory = url in ("sqlite://", "sqlite:///:memory:")

    if in_memory:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            pool_pre_ping=True,
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    Base.metadata.create_all(engine)
    _migrate_add_purge_column(engine)
    return engine


def _migrate_add_purge_column(engine: Engine) -> None:
    """Migration: add purge_requested to caches created before it existed.

    SQLite doesn't support IF NOT EXISTS for ADD COLUMN, so we check
    the schema first. Idempotent.
    """
    columns = [col["name"] for col in inspect(engine).get_columns("notes")]
    if "purge_requested" not in columns:
        with engine.connect() as conn:
            conn.execute(text(
                "ALTER TABLE notes ADD COLUMN purge_requested BOOLEAN "
                "NOT NULL DEFAULT 0"
            ))
            conn.commit()


def get_session_factory(engine: Optional[Engine] = None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
