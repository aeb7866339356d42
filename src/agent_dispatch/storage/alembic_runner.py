"""Programmatic Alembic migrations for the dispatch database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Engine

MIGRATIONS_DIR = Path(__file__).resolve().parents[3] / "alembic"


def alembic_config(db_path: Path) -> Config:
    """Config pointing at the bundled migrations, independent of the working directory."""

    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    command.upgrade(alembic_config(db_path), "head")


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, ``None`` before the first upgrade."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
