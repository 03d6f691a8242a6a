"""
Closure Rebuild Worker.

Polls the rebuild queue, recomputes stale closures and swaps them into
the closure table. Several instances may run side by side.

Run as: python -m customer_access.workers.closure_rebuild_job

Configuration:
- REBUILD_POLL_INTERVAL: Seconds between cycles (default: 15)
- REBUILD_BATCH_SIZE: Tasks claimed per cycle (default: rebuild.batch_size)
- ACCESS_REBUILD_CONFIG: Path to access_rebuild.yml
- DATABASE_URL: Database connection string
"""

import asyncio
import logging
import os
import signal
import time

from customer_access.config.rebuild_settings import get_rebuild_settings
from customer_access.database.session import get_db_session_sync
from customer_access.jobs.rebuild_worker import RebuildWorker

logger = logging.getLogger(__name__)

POLL_INTERVAL = int(os.getenv("REBUILD_POLL_INTERVAL", "15"))

_shutdown = False


def _handle_signal(signum, frame):
    global _shutdown
    logger.info("Shutdown signal received", extra={"signal": signum})
    _shutdown = True


def _batch_size() -> int:
    raw = os.getenv("REBUILD_BATCH_SIZE")
    return int(raw) if raw else get_rebuild_settings().batch_size


def run_cycle() -> dict:
    """Run one rebuild cycle. Returns the cycle summary (empty on failure)."""
    db_gen = get_db_session_sync()
    db = next(db_gen)
    try:
        worker = RebuildWorker(db)
        summary = asyncio.run(worker.run_cycle(limit=_batch_size()))

        if summary.get("claimed") or summary.get("recovered"):
            logger.info("Closure rebuild cycle complete", extra=summary)
        return summary

    except Exception:
        logger.error("Closure rebuild cycle failed", exc_info=True)
        db.rollback()
        return {}
    finally:
        db.close()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Closure rebuild worker started",
        extra={"poll_interval": POLL_INTERVAL},
    )

    while not _shutdown:
        summary = run_cycle()
        # A full batch means more work is likely waiting; skip the sleep.
        if summary.get("claimed", 0) >= _batch_size():
            continue
        for _ in range(POLL_INTERVAL):
            if _shutdown:
                break
            time.sleep(1)

    logger.info("Closure rebuild worker stopped")


if __name__ == "__main__":
    main()
