"""
Create the access engine schema.

Tables: users, customers, user_managers, user_customers, closure_entries,
closure_states and rebuild_tasks. Existing tables are left alone; schema
changes go through alembic revisions.

After bulk-loading a hierarchy into a fresh database nothing has
published invalidations yet, so every closure is empty. Pass
--rebuild-tenant to queue an immediate tenant-wide rebuild.

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --rebuild-tenant <tenant_id>
    python scripts/init_db.py --database-url sqlite:///access.db

Environment variables:
    DATABASE_URL: Connection string (unless --database-url is given)
"""

import sys
import logging
import argparse
from pathlib import Path

# Add backend directory to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from customer_access.database import session as db
from customer_access.db_base import Base
import customer_access.models  # noqa: F401

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_schema() -> list[str]:
    """
    Create missing tables and report which ones are absent afterwards.

    Returns:
        Names of expected tables still missing (empty on success)
    """
    engine = db.get_engine()

    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    logger.info("Connected to %s database", engine.dialect.name)

    expected = sorted(Base.metadata.tables.keys())
    Base.metadata.create_all(bind=engine)

    present = set(inspect(engine).get_table_names())
    missing = [name for name in expected if name not in present]
    for name in expected:
        logger.info("  %s: %s", name, "MISSING" if name in missing else "ok")
    return missing


def queue_tenant_rebuild(tenant_id: str) -> int:
    """Queue every user of the tenant for an immediate closure rebuild."""
    from customer_access.services.access_engine import AccessEngine

    for session in db.get_db_session_sync():
        result = AccessEngine(session).request_tenant_rebuild(tenant_id)
        logger.info(
            "Queued %d closure rebuild(s) for tenant %s (%d already pending)",
            len(result.created), tenant_id, len(result.collapsed),
        )
        return result.total
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Create access engine tables")
    parser.add_argument(
        "--rebuild-tenant",
        help="Queue a tenant-wide closure rebuild after creating tables",
    )
    parser.add_argument(
        "--database-url",
        help="Database URL (overrides DATABASE_URL)",
    )
    args = parser.parse_args()

    try:
        db.configure(args.database_url)
        missing = create_schema()
    except (ValueError, SQLAlchemyError) as e:
        logger.error("Schema creation failed: %s", e)
        return 1

    if missing:
        logger.error("Tables missing after create_all: %s", ", ".join(missing))
        return 1

    if args.rebuild_tenant:
        queue_tenant_rebuild(args.rebuild_tenant)

    logger.info("Database initialization complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
