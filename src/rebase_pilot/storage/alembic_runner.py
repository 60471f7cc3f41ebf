"""Run the job-store Alembic migrations programmatically."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

_ROOT_DIR = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(_ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(_ROOT_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str | None:
    return ScriptDirectory.from_config(alembic_config(Path(":memory:"))).get_current_head()


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in ``db_path``; None for a database never migrated."""

    if not db_path.exists():
        return None
    engine = create_engine(f"sqlite:///{db_path}")
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> None:
    """Bring ``db_path`` to the latest job-store schema; no-op when already there."""

    head = head_revision()
    current = current_revision(db_path)
    if current is not None and current == head:
        return
    logger.info("Migrating %s from %s to %s", db_path, current or "empty", head)
    command.upgrade(alembic_config(db_path), "head")
