"""Alembic environment for the sync cache schema (async SQLAlchemy)."""
import asyncio
import os
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv

from db.connection import dispose_engine, get_engine
from db.models import Base

load_dotenv()

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def include_name(name, type_, parent_names) -> bool:
    """Only manage objects in the sync schema."""
    if type_ == "schema":
        return name == "sync"
    return True


def run_migrations_offline() -> None:
    """Emit SQL for the sync schema without connecting."""
    context.configure(
        url=os.environ.get("DATABASE_URL", "postgresql+asyncpg://localhost/closeio_sync"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_schemas=True,
        include_name=include_name,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        include_schemas=True,
        include_name=include_name,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations on the shared engine (DATABASE_URL is validated there)."""
    async with get_engine().connect() as connection:
        await connection.run_sync(do_run_migrations)
    await dispose_engine()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
