"""Alembic environment: auto-detect SQLModel table definitions.

Reads DATABASE_URL from discovery.config.settings (same as the app),
so migrations use the same DB that the server uses.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlmodel import SQLModel, create_engine

# Alembic Config object
config = context.config

# Set up Python logging from .ini
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# --- Import all SQLModel table classes so metadata includes them ---
from discovery.models.experience import AttributeSchema, Experience  # noqa: F401, E402
from discovery.models.messages import Conversation, ConversationTurn  # noqa: F401, E402
from discovery.models.similarity import UserSimilarityEntry  # noqa: F401, E402

target_metadata = SQLModel.metadata

# --- Get DB URL from settings (same source of truth as the app) ---
from discovery.db.database import get_database_url  # noqa: E402

DATABASE_URL = get_database_url()


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (generates SQL without DB connection)."""
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,  # Required for SQLite ALTER TABLE support
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (applies directly to DB)."""
    connectable = create_engine(
        DATABASE_URL,
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,  # Required for SQLite ALTER TABLE support
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
