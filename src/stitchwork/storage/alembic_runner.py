"""Apply the bundled Alembic migrations to a stitchwork database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)


def _migrations_root() -> Path:
    for candidate in Path(__file__).resolve().parents:
        if (candidate / "alembic.ini").is_file() and (candidate / "alembic").is_dir():
            return candidate
    raise FileNotFoundError("alembic.ini and alembic/ not found above the stitchwork package")


def upgrade_head(db_path: Path) -> None:
    """Migrate the SQLite file at ``db_path`` to the newest revision."""

    root_dir = _migrations_root()
    config = Config(str(root_dir / "alembic.ini"))
    # The embedding application owns logging.
    config.attributes["configure_logger"] = False
    config.set_main_option("script_location", str(root_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    logger.debug("Upgrading %s to alembic head", db_path)
    command.upgrade(config, "head")
