"""Alembic migration environment for the knowledge entry tables.

Migrations run over a synchronous driver: psycopg for PostgreSQL, pysqlite
for SQLite. The URL comes from `Settings` unless overridden on the command
line with `alembic -x db_url=...`.
"""

import logging
from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context

from knowledge_engine.core.config import get_settings
from knowledge_engine.db.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

# Async drivers used by the application, and their synchronous counterparts
SYNC_DRIVERS = {
    "postgresql+asyncpg": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}

target_metadata = Base.metadata


def resolve_url() -> str:
    """Return a synchronous database URL for migrations."""
    url = context.get_x_argument(as_dictionary=True).get("db_url") or get_settings().get_database_url
    scheme, sep, rest = url.partition("://")
    return f"{SYNC_DRIVERS.get(scheme, scheme)}{sep}{rest}"


def run_migrations_offline(url: str) -> None:
    """Emit migration SQL to the script output without connecting."""
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online(url: str) -> None:
    connectable = create_engine(url, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        # SQLite cannot ALTER most constraints in place
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


database_url = resolve_url()
logger.info(f"[Migrations] Target: {database_url.partition('://')[0]}")

if context.is_offline_mode():
    run_migrations_offline(database_url)
else:
    run_migrations_online(database_url)
