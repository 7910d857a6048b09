"""Programmatic Alembic entry points for the scheduler database."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

MIGRATIONS_DIR_ENV = "GOAL_AUTOPILOT_MIGRATIONS_DIR"


def migrations_root() -> Path:
    """Directory holding ``alembic.ini`` and the ``alembic/`` scripts."""

    override = os.getenv(MIGRATIONS_DIR_ENV)
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    root_dir = migrations_root()
    config = Config(str(root_dir / "alembic.ini"))
    config.set_main_option("script_location", str(root_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in ``alembic_version``; ``None`` for a fresh database."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def upgrade_head(db_path: Path, *, engine: Engine | None = None) -> bool:
    """Bring the database to head; returns False when it was already there."""

    if engine is not None:
        current = current_revision(engine)
        head = head_revision(db_path)
        if current is not None and current == head:
            logger.debug("Scheduler schema already at %s (%s)", head, db_path)
            return False
        logger.info("Migrating scheduler schema %s -> %s (%s)", current, head, db_path)
    command.upgrade(alembic_config(db_path), "head")
    return True
