"""Alembic environment for the bridge tables."""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool

from basecore.db import create_db_engine
from basecore.settings import get_settings
from whatsapp_bridge.persistence.models import BridgeBase

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = BridgeBase.metadata


def get_url() -> str:
    return config.get_main_option("sqlalchemy.url") or get_settings().DATABASE_URL


def run_migrations_offline():
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = create_db_engine(get_url(), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
