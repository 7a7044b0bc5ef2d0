"""
Migration Runner - Applies Alembic migrations at startup or from the CLI.

Alembic's command API is synchronous, so the asyncpg URL from settings is
rewritten to psycopg2 before use.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import SQLAlchemyError

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from app.config import get_settings

logger = logging.getLogger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


class MigrationError(Exception):
    """Raised when pending migrations cannot be applied."""

    pass


@dataclass(frozen=True)
class MigrationStatus:
    """Current and head revisions of the schema."""

    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def sync_database_url(url: str | None = None) -> str:
    """Synchronous driver URL for the configured database."""
    url = url or get_settings().database_url
    return url.replace("+asyncpg", "+psycopg2")


def _alembic_config(url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return alembic_cfg


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def _head_revision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


def get_migration_status(url: str | None = None) -> MigrationStatus:
    """
    Read the schema revision without changing anything.

    Raises:
        MigrationError: Config missing or database unreachable
    """
    if not ALEMBIC_INI_PATH.exists():
        raise MigrationError(f"Alembic config not found at {ALEMBIC_INI_PATH}")

    sync_url = sync_database_url(url)
    alembic_cfg = _alembic_config(sync_url)
    engine = create_engine(sync_url)
    try:
        return MigrationStatus(
            current_revision=_current_revision(engine),
            head_revision=_head_revision(alembic_cfg),
        )
    except SQLAlchemyError as e:
        raise MigrationError(f"Could not read migration status: {e}") from e
    finally:
        engine.dispose()


def run_migrations(url: str | None = None) -> MigrationStatus:
    """
    Upgrade the schema to head if it is behind.

    Returns:
        Status after the run

    Raises:
        MigrationError: The upgrade failed
    """
    status = get_migration_status(url)
    if not status.pending:
        logger.info("Database schema is up to date (revision: %s)", status.current_revision)
        return status

    logger.info(
        "Running migrations from %s to %s", status.current_revision, status.head_revision
    )
    sync_url = sync_database_url(url)
    try:
        command.upgrade(_alembic_config(sync_url), "head")
    except SQLAlchemyError as e:
        logger.error("Migration failed: %s", e)
        raise MigrationError(f"Database migration failed: {e}") from e

    status = get_migration_status(url)
    logger.info("Migrations complete. Database now at revision: %s", status.current_revision)
    return status
