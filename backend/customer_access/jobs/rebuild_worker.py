"""
Rebuild worker for closure recomputation.

Executes rebuild tasks:
- Claims ready tasks (debounce elapsed, or retry due)
- Loads each tenant's graph once per batch and recomputes closures
- Swaps each user's closure atomically into the closure table
- Handles retries and DLQ on failures, alerting the operator channel
- Recovers tasks left running by a crashed worker

Several workers may run at once: on PostgreSQL tasks are claimed with
FOR UPDATE SKIP LOCKED, and a user with a running task is never claimed
again until that task finishes, so rebuilds of one user run in order.

SECURITY: Every graph, swap and alert is scoped to the task's tenant.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, exists, or_
from sqlalchemy.orm import Session, aliased

from customer_access.config.rebuild_settings import RebuildSettings, get_rebuild_settings
from customer_access.errors import RebuildTimeoutError, TenantIsolationError
from customer_access.hierarchy.closure import ClosureComputer
from customer_access.hierarchy.graph import GraphReader, TenantGraph, check_deadline
from customer_access.jobs.rebuild_scheduler import RebuildScheduler
from customer_access.jobs.retry import (
    ErrorCategory,
    RetryPolicy,
    categorize_error,
    log_retry_decision,
    should_retry,
)
from customer_access.models.base import as_utc, utcnow
from customer_access.models.rebuild_task import RebuildTask, RebuildTaskStatus
from customer_access.monitoring.rebuild_alerts import (
    RebuildAlertManager,
    alert_closure_staleness,
    alert_hierarchy_cycle,
    alert_rebuild_dead_lettered,
    alert_tenant_isolation_violation,
    check_rebuild_health,
    get_alert_manager,
)
from customer_access.monitoring.rebuild_metrics import RebuildMetrics, get_rebuild_metrics
from customer_access.repositories.closure_repo import ClosureTable

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500


@dataclass
class RebuildBatchResult:
    """Counts for one process_ready_tasks() call."""
    claimed: int = 0
    succeeded: int = 0
    skipped_stale_snapshot: int = 0
    failed: int = 0
    dead_lettered: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _is_postgres(db_session: Session) -> bool:
    return db_session.get_bind().dialect.name == "postgresql"


class RebuildWorker:
    """
    Executes closure rebuild tasks.

    Responsibilities:
    - Claim ready tasks without double-claiming a user
    - Recompute and swap closures, one transaction per user
    - Retry with exponential backoff, then move to DLQ
    - Emit logs, metrics and alerts for every state transition
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[RebuildSettings] = None,
        graph_reader: Optional[GraphReader] = None,
        alert_manager: Optional[RebuildAlertManager] = None,
        metrics: Optional[RebuildMetrics] = None,
    ):
        """
        Initialize rebuild worker.

        Args:
            db_session: Database session (task state, graph reads and swaps)
            settings: Rebuild settings (loaded from config when omitted)
            graph_reader: Graph reader (SQL stores on db_session by default)
            alert_manager: Operator alert channel
            metrics: Metrics emitter
        """
        self.db = db_session
        self.settings = settings or get_rebuild_settings()
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.graph_reader = graph_reader or GraphReader.for_session(db_session)
        self.alert_manager = alert_manager or get_alert_manager()
        self.metrics = metrics or get_rebuild_metrics()
        self.computer = ClosureComputer(self.graph_reader, on_cycle=self._record_cycle)
        self._cycles: List[Tuple[str, str, List[str]]] = []

    def _record_cycle(self, tenant_id: str, user_id: str, cycle_user_ids: List[str]) -> None:
        self._cycles.append((tenant_id, user_id, list(cycle_user_ids)))

    async def _flush_cycle_alerts(self) -> None:
        cycles, self._cycles = self._cycles, []
        for tenant_id, user_id, cycle_user_ids in cycles:
            await alert_hierarchy_cycle(
                tenant_id=tenant_id,
                user_id=user_id,
                cycle_user_ids=cycle_user_ids,
                manager=self.alert_manager,
            )

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def claim_ready_tasks(self, limit: Optional[int] = None) -> List[RebuildTask]:
        """
        Claim up to limit ready tasks and mark them running.

        Ready = queued with run_after <= now, or failed with
        next_retry_at <= now. Oldest enqueue first. Users that already
        have a running task are skipped.

        Args:
            limit: Maximum tasks to claim (settings.batch_size by default)

        Returns:
            Claimed tasks, committed as running
        """
        limit = limit or self.settings.batch_size
        now = utcnow()
        running = aliased(RebuildTask)

        query = (
            self.db.query(RebuildTask)
            .filter(
                or_(
                    and_(
                        RebuildTask.status == RebuildTaskStatus.QUEUED,
                        RebuildTask.run_after <= now,
                    ),
                    and_(
                        RebuildTask.status == RebuildTaskStatus.FAILED,
                        RebuildTask.next_retry_at <= now,
                    ),
                ),
                ~exists().where(
                    running.tenant_id == RebuildTask.tenant_id,
                    running.user_id == RebuildTask.user_id,
                    running.status == RebuildTaskStatus.RUNNING,
                ),
            )
            .order_by(RebuildTask.enqueued_at.asc())
            .limit(limit)
        )
        if _is_postgres(self.db):
            query = query.with_for_update(skip_locked=True, of=RebuildTask)

        tasks = query.all()
        for task in tasks:
            task.mark_running()
        self.db.commit()

        for task in tasks:
            logger.info(
                "rebuild.started",
                extra={
                    "task_id": task.id,
                    "tenant_id": task.tenant_id,
                    "user_id": task.user_id,
                    "attempt": task.attempt,
                    "reason": task.reason,
                },
            )
        return tasks

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def process_ready_tasks(self, limit: Optional[int] = None) -> RebuildBatchResult:
        """
        Claim and execute a batch of ready tasks.

        Tasks are grouped by tenant so each tenant graph is read once per
        batch. A failure of one user's rebuild never affects another's.

        Args:
            limit: Maximum tasks to process in this batch

        Returns:
            RebuildBatchResult with per-outcome counts
        """
        tasks = self.claim_ready_tasks(limit)
        result = RebuildBatchResult(claimed=len(tasks))

        if not tasks:
            logger.debug("No ready rebuild tasks to process")
            return result

        by_tenant: Dict[str, List[RebuildTask]] = OrderedDict()
        for task in tasks:
            by_tenant.setdefault(task.tenant_id, []).append(task)

        for tenant_id, tenant_tasks in by_tenant.items():
            await self._process_tenant(tenant_id, tenant_tasks, result)

        await self._flush_cycle_alerts()
        return result

    async def _process_tenant(
        self,
        tenant_id: str,
        tasks: List[RebuildTask],
        result: RebuildBatchResult,
    ) -> None:
        try:
            graph = self.graph_reader.load_tenant(tenant_id)
        except Exception as e:
            logger.error(
                "Failed to load tenant graph",
                extra={"tenant_id": tenant_id, "task_count": len(tasks), "error": str(e)},
                exc_info=not isinstance(e, TenantIsolationError),
            )
            self.db.rollback()
            for task in tasks:
                await self._handle_task_failure(task, e, result)
            return

        for task in tasks:
            try:
                await self.execute_task(task, graph, result)
            except Exception as e:
                self.db.rollback()
                await self._handle_task_failure(task, e, result)

    async def execute_task(
        self,
        task: RebuildTask,
        graph: TenantGraph,
        result: Optional[RebuildBatchResult] = None,
    ) -> None:
        """
        Recompute one user's closure from graph and swap it in.

        The deadline is checked during traversal and once more right
        before the swap, so an expired attempt never writes.

        Raises:
            RebuildTimeoutError, ClosureSwapError, TenantIsolationError
        """
        result = result or RebuildBatchResult()
        started = time.monotonic()
        deadline = started + self.settings.task_timeout_seconds

        customer_ids = self.computer.compute_from_graph(
            graph, task.tenant_id, task.user_id, deadline=deadline
        )
        check_deadline(deadline, task.tenant_id)

        swap = ClosureTable(self.db, task.tenant_id).replace_user_closure(
            task.user_id,
            customer_ids,
            snapshot_at=graph.snapshot_at,
        )

        task.mark_succeeded()
        self.db.commit()

        duration_ms = (time.monotonic() - started) * 1000
        lag_seconds = (utcnow() - as_utc(task.enqueued_at)).total_seconds()
        if swap.applied:
            result.succeeded += 1
        else:
            result.skipped_stale_snapshot += 1

        logger.info(
            "rebuild.completed",
            extra={
                "task_id": task.id,
                "tenant_id": task.tenant_id,
                "user_id": task.user_id,
                "attempt": task.attempt,
                "applied": swap.applied,
                "version": swap.version,
                "entry_count": swap.entry_count,
                "duration_ms": round(duration_ms, 2),
            },
        )
        self.metrics.record_completed(
            tenant_id=task.tenant_id,
            user_id=task.user_id,
            entry_count=swap.entry_count,
            applied=swap.applied,
            duration_ms=duration_ms,
            queue_lag_seconds=lag_seconds,
        )

    async def _handle_task_failure(
        self,
        task: RebuildTask,
        error: BaseException,
        result: RebuildBatchResult,
    ) -> None:
        """
        Handle task failure with retry logic.

        Closure rows are never touched here: the user keeps the last
        successfully swapped closure.

        Changes that arrived while the task was running sit in a newer
        pending task. A retried task absorbs it; a dead-lettered task
        leaves it queued so those changes are still rebuilt.
        """
        error_category = categorize_error(error)
        error_message = str(error)[:MAX_ERROR_MESSAGE_LENGTH] or error.__class__.__name__

        if error_category == ErrorCategory.UNKNOWN:
            logger.error(
                "Unexpected error executing rebuild task",
                extra={
                    "task_id": task.id,
                    "tenant_id": task.tenant_id,
                    "user_id": task.user_id,
                    "error": error_message,
                },
                exc_info=error,
            )

        decision = should_retry(
            error_category=error_category,
            attempts_made=task.attempt,
            policy=self.retry_policy,
        )
        log_retry_decision(
            task_id=task.id,
            tenant_id=task.tenant_id,
            user_id=task.user_id,
            error_category=error_category,
            decision=decision,
        )

        if decision.move_to_dlq:
            task.mark_dead_letter(error_message, error_code=error_category.value)
            self.db.commit()
            result.dead_lettered += 1
            self._log_task_dead_lettered(task)
            self.metrics.record_dead_lettered(task.tenant_id, task.user_id, error_category.value)

            if error_category == ErrorCategory.TENANT_VIOLATION:
                await alert_tenant_isolation_violation(
                    tenant_id=task.tenant_id,
                    offending_tenant_id=getattr(error, "offending_tenant_id", None),
                    operation="closure_rebuild",
                    detail=error_message,
                    manager=self.alert_manager,
                )
            else:
                await alert_rebuild_dead_lettered(
                    tenant_id=task.tenant_id,
                    user_id=task.user_id,
                    task_id=task.id,
                    attempts=task.attempt,
                    error_code=task.error_code,
                    error_message=task.error_message,
                    manager=self.alert_manager,
                )
        else:
            self._absorb_pending_task(task)
            task.mark_failed(
                error_message=error_message,
                error_code=error_category.value,
                next_retry_at=decision.next_retry_at,
            )
            self.db.commit()
            result.failed += 1
            self.metrics.record_failed(
                task.tenant_id, task.user_id, error_category.value, task.attempt
            )

    def _log_task_dead_lettered(self, task: RebuildTask) -> None:
        logger.error(
            "rebuild.dead_lettered",
            extra={
                "task_id": task.id,
                "tenant_id": task.tenant_id,
                "user_id": task.user_id,
                "error_message": task.error_message,
                "error_code": task.error_code,
                "attempt": task.attempt,
            },
        )

    # ------------------------------------------------------------------
    # Stalled task recovery
    # ------------------------------------------------------------------

    def _absorb_pending_task(self, task: RebuildTask) -> None:
        """
        Fold a user's newer pending task into its running task.

        Only one pending task per user may exist, and the running task is
        about to become pending again. It keeps the earlier enqueued_at.
        """
        pending = RebuildScheduler(self.db, self.settings).get_pending_tasks(
            task.tenant_id, [task.user_id]
        ).get(task.user_id)
        if pending is None or pending.id == task.id:
            return
        task.enqueue_count = (task.enqueue_count or 1) + (pending.enqueue_count or 1)
        task.last_enqueued_at = pending.last_enqueued_at
        task.reason = pending.reason or task.reason
        absorbed_task_id = pending.id
        self.db.delete(pending)
        self.db.flush()
        logger.info(
            "rebuild.pending_absorbed",
            extra={
                "task_id": task.id,
                "absorbed_task_id": absorbed_task_id,
                "tenant_id": task.tenant_id,
                "user_id": task.user_id,
            },
        )

    async def recover_stalled_tasks(self) -> int:
        """
        Return running tasks older than timeout * stall_factor to the retry queue.

        A worker that crashed mid-task leaves it running forever; this
        counts the lost attempt and schedules a fresh one (or dead-letters
        the task once its attempts are exhausted).

        Returns:
            Number of stalled tasks recovered
        """
        stall_seconds = self.settings.task_timeout_seconds * self.settings.stall_factor
        cutoff = utcnow() - timedelta(seconds=stall_seconds)

        stalled = (
            self.db.query(RebuildTask)
            .filter(
                RebuildTask.status == RebuildTaskStatus.RUNNING,
                RebuildTask.started_at < cutoff,
            )
            .order_by(RebuildTask.started_at.asc())
            .all()
        )
        if not stalled:
            return 0

        result = RebuildBatchResult()
        for task in stalled:
            logger.warning(
                "rebuild.stalled",
                extra={
                    "task_id": task.id,
                    "tenant_id": task.tenant_id,
                    "user_id": task.user_id,
                    "attempt": task.attempt,
                    "started_at": as_utc(task.started_at).isoformat(),
                },
            )
            error = RebuildTimeoutError(
                f"Task stalled: running for more than {stall_seconds:.0f}s",
                tenant_id=task.tenant_id,
            )
            await self._handle_task_failure(task, error, result)

        return len(stalled)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, limit: Optional[int] = None) -> dict:
        """
        Run one worker cycle: recover stalled tasks, process a batch, check health.

        Returns:
            Summary of the cycle
        """
        recovered = await self.recover_stalled_tasks()
        batch = await self.process_ready_tasks(limit=limit)

        health = await check_rebuild_health(self.db, self.settings)
        self.metrics.record_staleness(health.oldest_pending_age_seconds, health.pending_tasks)
        if health.staleness_exceeded:
            await alert_closure_staleness(
                oldest_pending_age_seconds=health.oldest_pending_age_seconds,
                threshold_seconds=self.settings.staleness_alert_seconds,
                pending_tasks=health.pending_tasks,
                manager=self.alert_manager,
            )

        self.metrics.record_cycle(
            claimed=batch.claimed,
            succeeded=batch.succeeded + batch.skipped_stale_snapshot,
            failed=batch.failed,
            dead_lettered=batch.dead_lettered,
            recovered=recovered,
        )

        summary = {
            "recovered": recovered,
            **batch.to_dict(),
            "pending": health.pending_tasks,
            "healthy": health.healthy,
        }
        logger.info("Rebuild worker cycle completed", extra=summary)
        return summary


async def run_worker_cycle(
    db_session: Session,
    settings: Optional[RebuildSettings] = None,
    limit: Optional[int] = None,
) -> dict:
    """
    Run one cycle of the closure rebuild worker.

    Args:
        db_session: Database session
        settings: Rebuild settings
        limit: Maximum tasks to process

    Returns:
        Summary of tasks processed
    """
    worker = RebuildWorker(db_session=db_session, settings=settings)
    return await worker.run_cycle(limit=limit)
