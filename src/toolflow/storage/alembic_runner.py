"""Programmatic Alembic upgrades for the job, tool and queue tables."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]

# Job, tool and queue repositories may share one database file; Alembic's
# version table write is not safe to race from several threads.
_UPGRADE_LOCK = threading.Lock()


def alembic_config(db_path: Path) -> Config:
    """Alembic config bound to ``db_path``."""

    alembic_ini = PROJECT_ROOT / "alembic.ini"
    alembic_dir = PROJECT_ROOT / "alembic"
    if not alembic_dir.is_dir():
        raise FileNotFoundError(f"Alembic migrations not found: {alembic_dir}")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(alembic_dir))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head for the given SQLite database."""

    config = alembic_config(db_path)
    with _UPGRADE_LOCK:
        command.upgrade(config, "head")
    logger.debug("Schema at head for %s", db_path)
