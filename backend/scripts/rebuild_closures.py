"""
Operator tool for the closure rebuild queue.

Usage:
    python -m scripts.rebuild_closures tenant <tenant_id>
    python -m scripts.rebuild_closures requeue --task-id <task_id>
    python -m scripts.rebuild_closures requeue --tenant-id <tenant_id>
    python -m scripts.rebuild_closures dead-letter [--tenant-id <tenant_id>] [--limit 50]
    python -m scripts.rebuild_closures run-once [--limit 100]
    python -m scripts.rebuild_closures health
    python -m scripts.rebuild_closures --database-url <url> <command> ...

Environment variables:
    DATABASE_URL: Database connection string
    ACCESS_REBUILD_CONFIG: Path to access_rebuild.yml
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

# Add backend directory to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from customer_access.database.session import configure, get_db_session_sync
from customer_access.errors import TaskNotFoundError
from customer_access.jobs.rebuild_scheduler import RebuildScheduler
from customer_access.jobs.rebuild_worker import run_worker_cycle
from customer_access.models.base import as_utc
from customer_access.monitoring.rebuild_alerts import check_rebuild_health
from customer_access.services.access_engine import AccessEngine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def rebuild_tenant(db, args) -> int:
    result = AccessEngine(db).request_tenant_rebuild(args.tenant_id)
    logger.info(
        f"Queued tenant rebuild for {args.tenant_id}: "
        f"{len(result.created)} new, {len(result.collapsed)} collapsed"
    )
    return 0


def requeue(db, args) -> int:
    scheduler = RebuildScheduler(db)
    if args.task_id:
        try:
            result = scheduler.requeue_dead_letter(args.task_id, tenant_id=args.tenant_id)
        except (TaskNotFoundError, ValueError) as e:
            logger.error(str(e))
            return 1
    elif args.tenant_id:
        result = scheduler.requeue_all_dead_letter(args.tenant_id)
    else:
        logger.error("requeue needs --task-id or --tenant-id")
        return 2

    logger.info(f"Requeued {result.total} user(s) in tenant {result.tenant_id}")
    return 0


def list_dead_letter(db, args) -> int:
    tasks = RebuildScheduler(db).list_dead_letter(tenant_id=args.tenant_id, limit=args.limit)
    if not tasks:
        logger.info("Dead letter queue is empty")
        return 0

    for task in tasks:
        completed = as_utc(task.completed_at)
        print(
            f"{task.id}  tenant={task.tenant_id}  user={task.user_id}  "
            f"attempts={task.attempt}  error={task.error_code}  "
            f"at={completed.isoformat() if completed else '-'}  {task.error_message or ''}"
        )
    return 0


def run_once(db, args) -> int:
    summary = asyncio.run(run_worker_cycle(db, limit=args.limit))
    print(json.dumps(summary, indent=2))
    return 0


def health(db, args) -> int:
    status = asyncio.run(check_rebuild_health(db))
    print(json.dumps(status.to_dict(), indent=2))
    return 0 if status.healthy else 1


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Manage closure rebuilds")
    parser.add_argument("--database-url", type=str, help="Database URL (overrides DATABASE_URL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    tenant_parser = subparsers.add_parser("tenant", help="Rebuild every closure of a tenant")
    tenant_parser.add_argument("tenant_id", type=str)
    tenant_parser.set_defaults(handler=rebuild_tenant)

    requeue_parser = subparsers.add_parser("requeue", help="Requeue dead-lettered rebuilds")
    requeue_parser.add_argument("--task-id", type=str, help="Single dead-lettered task")
    requeue_parser.add_argument("--tenant-id", type=str, help="Every dead-lettered task of a tenant")
    requeue_parser.set_defaults(handler=requeue)

    dlq_parser = subparsers.add_parser("dead-letter", help="List dead-lettered rebuilds")
    dlq_parser.add_argument("--tenant-id", type=str)
    dlq_parser.add_argument("--limit", type=int, default=50)
    dlq_parser.set_defaults(handler=list_dead_letter)

    run_parser = subparsers.add_parser("run-once", help="Run a single worker cycle")
    run_parser.add_argument("--limit", type=int, default=None)
    run_parser.set_defaults(handler=run_once)

    health_parser = subparsers.add_parser("health", help="Print rebuild queue health")
    health_parser.set_defaults(handler=health)

    args = parser.parse_args()
    if args.database_url:
        configure(args.database_url)

    exit_code = 1
    for db in get_db_session_sync():
        exit_code = args.handler(db, args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
