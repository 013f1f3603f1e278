from __future__ import annotations

from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import create_engine, pool
from sqlmodel import SQLModel

from app.domain import models  # noqa: F401
from app.infra.db import DATABASE_URL

VERSION_TABLE = "hierarchy_schema_version"

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _options(**extra: Any) -> dict[str, Any]:
    return {
        "target_metadata": SQLModel.metadata,
        "version_table": VERSION_TABLE,
        "compare_type": True,
        **extra,
    }


def run_offline() -> None:
    context.configure(
        **_options(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(DATABASE_URL, poolclass=pool.NullPool)
    with engine.connect() as connection:
        # SQLite cannot ALTER constraints in place.
        context.configure(**_options(connection=connection, render_as_batch=connection.dialect.name == "sqlite"))
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
