"""Programmatic Alembic entry points for the task store schema."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

_ROOT_DIR = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    """Alembic config bound to ``db_path`` and the repository's migration scripts."""

    config = Config(str(_ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(_ROOT_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()


def upgrade_head(db_path: Path) -> None:
    """Create or upgrade the schema; a database already at head is left as is."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Upgrading task store schema at %s", db_path)
    command.upgrade(alembic_config(db_path), "head")
