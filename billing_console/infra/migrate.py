from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from billing_console.infra.logging_setup import configure_logging

logger = logging.getLogger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def run_upgrade_head(revision: str = "head") -> None:
    config = Config(str(ALEMBIC_INI))
    logger.info("upgrading database schema to %s", revision)
    command.upgrade(config, revision)


if __name__ == "__main__":
    configure_logging()
    run_upgrade_head()
