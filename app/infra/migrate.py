from __future__ import annotations

import logging
import sys

from alembic import command
from alembic.config import Config

from app.infra.log import configure_logging

logger = logging.getLogger(__name__)


def run_upgrade(revision: str = "head", config_path: str = "alembic.ini") -> None:
    logger.info("applying hierarchy schema migrations up to %s", revision)
    command.upgrade(Config(config_path), revision)


if __name__ == "__main__":
    configure_logging()
    run_upgrade(sys.argv[1] if len(sys.argv) > 1 else "head")
