"""
Migration Runner - Applies pending Alembic migrations at startup.

Enabled with RUN_MIGRATIONS_ON_STARTUP. Several replicas may boot at once,
so the upgrade runs under a PostgreSQL advisory lock and re-checks the
revision after acquiring it.
"""

from pathlib import Path

from sqlalchemy import Connection, create_engine, text
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from paysync.config import settings

logger = get_logger(__name__)

ALEMBIC_INI_PATH = Path(__file__).resolve().parents[2] / "alembic.ini"

# Arbitrary application-wide key for pg_advisory_lock.
MIGRATION_LOCK_KEY = 0x70617973


def get_sync_database_url() -> str:
    """Alembic runs synchronously: swap the asyncpg driver for psycopg2."""
    return settings.database_url.replace("+asyncpg", "+psycopg2")


def _current_revision(conn: Connection) -> str | None:
    return MigrationContext.configure(conn).get_current_revision()


def run_migrations() -> None:
    """
    Upgrade the schema to head if it is behind.

    Raises:
        RuntimeError: If the upgrade fails; the service must not start
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = get_sync_database_url()
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    head = ScriptDirectory.from_config(alembic_cfg).get_current_head()

    engine = create_engine(sync_url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT pg_advisory_lock(:key)"), {"key": MIGRATION_LOCK_KEY})
            try:
                current = _current_revision(conn)
                if current == head:
                    logger.info("database_schema_up_to_date", revision=current)
                    return
                logger.info("running_migrations", from_revision=current, to_revision=head)
                command.upgrade(alembic_cfg, "head")
                logger.info("migrations_complete", revision=head)
            finally:
                conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": MIGRATION_LOCK_KEY})
                conn.commit()
    except Exception as exc:
        logger.error("migration_failed", error=str(exc))
        raise RuntimeError(f"Database migration failed: {exc}") from exc
    finally:
        engine.dispose()
