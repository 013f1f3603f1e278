from __future__ import annotations

import logging
import os
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://gov:gov@db:5432/gov_hierarchy",
)
AUTO_CREATE_SCHEMA = os.getenv("AUTO_CREATE_SCHEMA", "false").lower() in {"1", "true", "yes"}

logger = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    sqlite_engine = create_engine(url, connect_args={"check_same_thread": False})

    # Unit, position and appointment links rely on enforced foreign keys.
    @event.listens_for(sqlite_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return sqlite_engine


engine = build_engine(DATABASE_URL)


def get_engine() -> Engine:
    return engine


def dialect_name(session: Session) -> str:
    return session.get_bind().dialect.name


def supports_row_locks(session: Session) -> bool:
    return dialect_name(session) == "postgresql"


def create_schema() -> None:
    from app.domain import models  # noqa: F401

    SQLModel.metadata.create_all(get_engine())
    logger.info("hierarchy schema created on %s", get_engine().dialect.name)


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("database readiness probe failed", exc_info=True)
        return False
    return True
