"""Run the pipeline's Alembic migrations against a SQLite file."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.engine import Engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head for ``db_path``."""

    logger.debug("Upgrading schema of %s to head", db_path)
    command.upgrade(_config(db_path), "head")


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in ``alembic_version``, or None for an unmigrated database."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
