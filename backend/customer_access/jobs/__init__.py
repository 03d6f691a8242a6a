"""Closure rebuild queue: scheduling, execution and retry policy."""

from customer_access.jobs.rebuild_scheduler import EnqueueResult, RebuildScheduler
from customer_access.jobs.rebuild_worker import RebuildBatchResult, RebuildWorker, run_worker_cycle
from customer_access.jobs.retry import RetryPolicy, should_retry, calculate_backoff

__all__ = [
    "EnqueueResult",
    "RebuildScheduler",
    "RebuildBatchResult",
    "RebuildWorker",
    "run_worker_cycle",
    "RetryPolicy",
    "should_retry",
    "calculate_backoff",
]
