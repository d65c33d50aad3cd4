"""
Alembic environment for the Escuela Segura billing schema.

Migrations run on the async engine and resolve the connection URL the same
way the application does. Only the public schema is managed here: Supabase
owns auth, storage and the other platform schemas.
"""

import asyncio
import os
import sys
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context

# Add the backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config.settings import settings
from app.infrastructure.db.database import build_database_url
from sqlmodel import SQLModel

# Registers the billing tables on SQLModel.metadata
from app.infrastructure.db.models import (  # noqa: F401
    CompanyModel,
    SubscriptionModel,
    PaymentTransactionModel,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata

PLATFORM_SCHEMAS = {"auth", "storage", "realtime", "extensions", "graphql", "graphql_public", "vault"}

# Supabase tables that may surface in public when reflecting
PLATFORM_TABLES = {"schema_migrations", "buckets", "objects", "secrets", "decrypted_secrets"}


def include_object(object, name, type_, reflected, compare_to):
    """Keep autogenerate away from Supabase-managed objects."""
    if type_ != "table":
        return True
    if getattr(object, "schema", None) in PLATFORM_SCHEMAS:
        return False
    return name not in PLATFORM_TABLES


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL without connecting."""
    _configure(
        url=build_database_url(settings),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    _configure(connection=connection, compare_server_default=True)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(build_database_url(settings), poolclass=pool.NullPool)

    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
