from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context
from app.config import settings
from app.db import Base, RadiusBase
from app.models import (  # noqa: F401
    catalog,
    network,
    orders,
    payment_provider,
    radius,
    vouchers,
)

config = context.config

config.set_main_option("sqlalchemy.url", settings.database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# RADIUS tables are only managed here while they share the application database.
target_metadata = (
    [Base.metadata] if settings.radius_database_url else [Base.metadata, RadiusBase.metadata]
)
_RADIUS_TABLES = set(RadiusBase.metadata.tables)


def include_object(object, name, type_, reflected, compare_to):
    """Leave an externally managed FreeRADIUS schema alone."""
    if type_ == "table" and settings.radius_database_url and name in _RADIUS_TABLES:
        return False
    return True


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_object=include_object,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            include_object=include_object,
            transaction_per_migration=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
