"""
Closure rebuild metrics for monitoring.

Emits structured log events that can be picked up by log aggregators
for dashboards and alerting.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Dedicated metrics logger for easy filtering
metrics_logger = logging.getLogger("access.metrics")


class RebuildMetrics:
    """
    Collects and emits rebuild pipeline metrics via structured logging.

    Metrics emitted:
    - rebuild_enqueued: Users enqueued (new vs collapsed)
    - rebuild_completed: Closure swapped (or skipped as older snapshot)
    - rebuild_failed: Attempt failed, retry scheduled
    - rebuild_dead_lettered: Retries exhausted
    - rebuild_cycle_completed: One worker cycle finished
    - closure_staleness: Age of the oldest pending rebuild
    """

    _instance: Optional["RebuildMetrics"] = None

    @classmethod
    def get_instance(cls) -> "RebuildMetrics":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def record_enqueued(
        self,
        tenant_id: str,
        created: int,
        collapsed: int,
        reason: Optional[str] = None,
    ) -> None:
        metrics_logger.info(
            "rebuild_enqueued",
            extra={
                "metric": "rebuild_enqueued",
                "tenant_id": tenant_id,
                "created_count": created,
                "collapsed_count": collapsed,
                "reason": reason,
            }
        )

    def record_completed(
        self,
        tenant_id: str,
        user_id: str,
        entry_count: int,
        applied: bool,
        duration_ms: float,
        queue_lag_seconds: float,
    ) -> None:
        """Record a finished rebuild. queue_lag_seconds runs from first enqueue to swap."""
        metrics_logger.info(
            "rebuild_completed",
            extra={
                "metric": "rebuild_completed",
                "tenant_id": tenant_id,
                "user_id": user_id,
                "entry_count": entry_count,
                "applied": applied,
                "duration_ms": round(duration_ms, 2),
                "queue_lag_seconds": round(queue_lag_seconds, 2),
            }
        )

    def record_failed(
        self,
        tenant_id: str,
        user_id: str,
        error_category: str,
        attempt: int,
    ) -> None:
        metrics_logger.warning(
            "rebuild_failed",
            extra={
                "metric": "rebuild_failed",
                "tenant_id": tenant_id,
                "user_id": user_id,
                "error_category": error_category,
                "attempt": attempt,
            }
        )

    def record_dead_lettered(
        self,
        tenant_id: str,
        user_id: str,
        error_category: str,
    ) -> None:
        metrics_logger.error(
            "rebuild_dead_lettered",
            extra={
                "metric": "rebuild_dead_lettered",
                "tenant_id": tenant_id,
                "user_id": user_id,
                "error_category": error_category,
            }
        )

    def record_cycle(
        self,
        claimed: int,
        succeeded: int,
        failed: int,
        dead_lettered: int,
        recovered: int,
    ) -> None:
        metrics_logger.info(
            "rebuild_cycle_completed",
            extra={
                "metric": "rebuild_cycle_completed",
                "claimed": claimed,
                "succeeded": succeeded,
                "failed": failed,
                "dead_lettered": dead_lettered,
                "recovered": recovered,
            }
        )

    def record_staleness(self, oldest_pending_age_seconds: float, pending_tasks: int) -> None:
        metrics_logger.info(
            "closure_staleness",
            extra={
                "metric": "closure_staleness",
                "oldest_pending_age_seconds": round(oldest_pending_age_seconds, 1),
                "pending_tasks": pending_tasks,
            }
        )


def get_rebuild_metrics() -> RebuildMetrics:
    """Get the rebuild metrics singleton."""
    return RebuildMetrics.get_instance()
