"""Alembic environment for the commerce_ingestor sync tables."""

from __future__ import annotations

import logging
from logging.config import fileConfig

from sqlalchemy import create_engine, pool
from sqlalchemy.engine import make_url

from alembic import context  # type: ignore[import-untyped]
from commerce_ingestor.models.base import Base, _load_models
from commerce_ingestor.utils.config import ensure_runtime_configuration, get_settings

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)
logger = logging.getLogger("alembic.env")

_load_models()
target_metadata = Base.metadata


def get_database_url() -> str:
    """Resolve COMMERCE_DATABASE_URL after validating runtime configuration."""

    settings = get_settings()
    ensure_runtime_configuration(settings)
    database_url = settings.database_url
    assert database_url is not None
    return database_url


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def run_migrations_offline() -> None:
    """Emit SQL for the configured database without connecting."""

    url = get_database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_as_batch=_is_sqlite(url),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a live connection."""

    url = get_database_url()
    connectable = create_engine(url, poolclass=pool.NullPool)
    logger.info("Running migrations against %s", make_url(url).render_as_string(hide_password=True))

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=_is_sqlite(url),
            transaction_per_migration=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
