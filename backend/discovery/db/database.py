"""Database setup: SQLite with WAL mode via SQLModel/SQLAlchemy.

What goes where:
- SQLite: Experience, AttributeSchema, UserSimilarityEntry, Conversation,
          ConversationTurn
- ChromaDB: narrative embeddings for experiences (vector-searchable)
"""

from __future__ import annotations

import os

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from discovery.config import settings


def get_database_url() -> str:
    """Get database URL, ensuring the data directory exists."""
    url = settings.database_url
    if url.startswith("sqlite:///"):
        db_path = url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
    return url


@event.listens_for(Engine, "connect")
def set_sqlite_wal(dbapi_connection, connection_record):
    """Enable WAL mode so retrieval reads proceed during cache and turn-log writes."""
    if not type(dbapi_connection).__module__.startswith("sqlite3"):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def make_engine(url: str) -> Engine:
    """Create an engine for an arbitrary URL (tests use temp files)."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args)


engine = make_engine(get_database_url())


def create_db_and_tables(target: Engine | None = None):
    """Create all tables defined by SQLModel metadata."""
    # Register every table on the metadata before create_all
    from discovery.models import experience, messages, similarity  # noqa: F401

    SQLModel.metadata.create_all(target or engine)
