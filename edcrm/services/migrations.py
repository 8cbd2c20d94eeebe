"""SQL migration runner for the CRM settings store."""
import logging
from pathlib import Path
from typing import List, Optional

from .database import get_db_connection


log = logging.getLogger("edcrm.migrations")

MIGRATIONS_DIR = Path(__file__).parent.parent / "migrations"


def list_migration_files(migrations_dir: Path = MIGRATIONS_DIR) -> List[Path]:
    """SQL files in apply order, skipping templates (_*) and health checks (9999*)."""
    if not migrations_dir.exists():
        return []
    return sorted(
        f for f in migrations_dir.glob("*.sql")
        if not f.name.startswith("_") and not f.name.startswith("9999")
    )


def run_migrations(migrations_dir: Path = MIGRATIONS_DIR, dsn: Optional[str] = None) -> int:
    """Run all SQL migrations in order.

    Simply executes migration files sequentially. Each migration file is
    responsible for its own idempotency.

    Returns:
        Number of files applied
    """
    migration_files = list_migration_files(migrations_dir)
    if not migration_files:
        log.info("No migration files found in %s", migrations_dir)
        return 0

    log.info("Found %d migration files", len(migration_files))

    with get_db_connection(dsn) as conn:
        with conn.cursor() as cur:
            for migration_file in migration_files:
                filename = migration_file.name
                log.info("Applying migration: %s", filename)

                try:
                    cur.execute(migration_file.read_text(encoding="utf-8"))
                    conn.commit()
                except Exception as e:
                    log.error("Failed to apply %s: %s", filename, e)
                    conn.rollback()
                    raise

    log.info("All migrations applied successfully")
    return len(migration_files)
