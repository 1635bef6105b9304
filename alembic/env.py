"""Alembic environment for the kanguard schema.

Connection parameters come from DatabaseSettings (DATABASE_* env vars and
.env), the same source the async runtime uses, so migrations and the
service always target one database.
"""

from logging.config import fileConfig

from sqlalchemy import create_engine, pool, text

from alembic import context
from src.config.settings import DatabaseSettings
from src.store.database import database_url
from src.store.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

db_settings = DatabaseSettings()
SCHEMA = db_settings.schema_
DATABASE_URL = database_url(db_settings, driver="psycopg")

target_metadata = Base.metadata


def include_name(name, type_, parent_names):
    """Restrict autogenerate to the guard schema."""
    if type_ == "schema":
        return name == SCHEMA
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        version_table_schema=SCHEMA,
        include_schemas=True,
        include_name=include_name,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL without a live connection."""
    _configure(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a short-lived synchronous connection."""
    engine = create_engine(DATABASE_URL, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            # version table lives in the schema, so it must exist first
            connection.execute(text(f"CREATE SCHEMA IF NOT EXISTS {SCHEMA}"))
            connection.commit()

            _configure(connection=connection)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
