import asyncio
from logging.config import fileConfig
from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context
from config import load_settings
from models import Base

# This is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Set the metadata target for autogenerate support
target_metadata = Base.metadata

DATABASE_URL = load_settings().database_url


def run_migrations_offline() -> None:
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(DATABASE_URL, future=True)
    async with engine.begin() as connection:

        def do_run_migrations(sync_conn):
            context.configure(connection=sync_conn, target_metadata=target_metadata)

            with context.begin_transaction():
                context.run_migrations()

        # Execute the synchronous migration function within the async connection
        await connection.run_sync(do_run_migrations)
    await engine.dispose()


def run_migrations() -> None:
    """Run Alembic migrations in the correct mode."""
    if context.is_offline_mode():
        run_migrations_offline()
    else:
        asyncio.run(run_migrations_online())


run_migrations()
