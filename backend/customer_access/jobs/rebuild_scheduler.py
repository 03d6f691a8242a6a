"""
Rebuild scheduler for closure recomputation.

Handles:
- Enqueueing stale users (one pending task per tenant+user)
- Trailing debounce: repeated enqueues slide run_after forward, capped
- Tenant-wide rebuild requests
- Manual requeue from dead letter queue (operator-only)

Enqueue only writes task rows; it never computes a closure. Mutation
paths call it right after their own transaction commits.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from customer_access.config.rebuild_settings import RebuildSettings, get_rebuild_settings
from customer_access.errors import TaskNotFoundError
from customer_access.models.base import utcnow
from customer_access.models.rebuild_task import (
    PENDING_STATUSES,
    RebuildTask,
    RebuildTaskStatus,
)

logger = logging.getLogger(__name__)

# Bound on IN (...) list sizes when looking up pending tasks
_LOOKUP_CHUNK = 500

TENANT_REBUILD_REASON = "tenant_rebuild"
DLQ_REQUEUE_REASON = "dlq_requeue"


@dataclass
class EnqueueResult:
    """
    Outcome of one enqueue call.

    Attributes:
        tenant_id: Tenant the users belong to
        created: Users that got a new queued task
        collapsed: Users whose enqueue folded into an existing pending task
    """
    tenant_id: str
    created: List[str] = field(default_factory=list)
    collapsed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.created) + len(self.collapsed)


def _chunks(items: List[str], size: int = _LOOKUP_CHUNK):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class RebuildScheduler:
    """
    Durable, deduplicating queue of closure rebuilds.

    Responsibilities:
    - Collapse enqueues for a user into its single pending task
    - Apply the per-user debounce window
    - Expose queue depth and dead-letter inspection for operators
    """

    def __init__(self, db_session: Session, settings: Optional[RebuildSettings] = None):
        """
        Initialize rebuild scheduler.

        Args:
            db_session: Database session
            settings: Rebuild settings (loaded from config when omitted)
        """
        self.db = db_session
        self.settings = settings or get_rebuild_settings()

    def get_pending_tasks(self, tenant_id: str, user_ids: List[str]) -> dict:
        """Map user_id -> pending RebuildTask for the given users."""
        pending = {}
        for chunk in _chunks(user_ids):
            tasks = (
                self.db.query(RebuildTask)
                .filter(
                    RebuildTask.tenant_id == tenant_id,
                    RebuildTask.user_id.in_(chunk),
                    RebuildTask.status.in_(PENDING_STATUSES),
                )
                .all()
            )
            for task in tasks:
                pending[task.user_id] = task
        return pending

    def enqueue(
        self,
        tenant_id: str,
        user_ids: Iterable[str],
        reason: Optional[str] = None,
        immediate: bool = False,
    ) -> EnqueueResult:
        """
        Mark users' closures as needing a rebuild.

        Args:
            tenant_id: Tenant of every user in user_ids
            user_ids: Users whose closure is stale
            reason: Change kind that caused the enqueue
            immediate: Skip the debounce window (operator requests)

        Returns:
            EnqueueResult listing created and collapsed users
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        unique_ids = list(dict.fromkeys(u for u in user_ids if u))
        if not unique_ids:
            return EnqueueResult(tenant_id=tenant_id)

        try:
            result = self._enqueue_once(tenant_id, unique_ids, reason, immediate)
            self.db.commit()
        except IntegrityError:
            # Partial unique index violation - a concurrent enqueue created
            # a pending task first. Re-read and collapse into it.
            self.db.rollback()
            logger.warning(
                "Rebuild enqueue race condition - re-reading pending tasks",
                extra={"tenant_id": tenant_id, "user_count": len(unique_ids)},
            )
            result = self._enqueue_once(tenant_id, unique_ids, reason, immediate)
            self.db.commit()

        logger.info(
            "rebuild.enqueued",
            extra={
                "tenant_id": tenant_id,
                "reason": reason,
                "created_count": len(result.created),
                "collapsed_count": len(result.collapsed),
                "immediate": immediate,
            },
        )
        return result

    def _enqueue_once(
        self,
        tenant_id: str,
        user_ids: List[str],
        reason: Optional[str],
        immediate: bool,
    ) -> EnqueueResult:
        now = utcnow()
        debounce = 0.0 if immediate else self.settings.debounce_seconds
        pending = self.get_pending_tasks(tenant_id, user_ids)
        result = EnqueueResult(tenant_id=tenant_id)

        for user_id in user_ids:
            task = pending.get(user_id)
            if task is not None:
                task.collapse(
                    now=now,
                    debounce_seconds=debounce,
                    max_debounce_seconds=self.settings.max_debounce_seconds,
                    reason=reason,
                )
                if immediate:
                    if task.status == RebuildTaskStatus.QUEUED:
                        task.run_after = now
                    else:
                        task.next_retry_at = now
                result.collapsed.append(user_id)
                continue

            self.db.add(
                RebuildTask(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    status=RebuildTaskStatus.QUEUED,
                    attempt=0,
                    reason=reason,
                    enqueue_count=1,
                    enqueued_at=now,
                    last_enqueued_at=now,
                    run_after=now + timedelta(seconds=debounce),
                )
            )
            result.created.append(user_id)

        self.db.flush()
        return result

    def enqueue_tenant(
        self,
        tenant_id: str,
        user_ids: Iterable[str],
        reason: str = TENANT_REBUILD_REASON,
    ) -> EnqueueResult:
        """Queue every given user of the tenant for an immediate rebuild."""
        return self.enqueue(tenant_id, user_ids, reason=reason, immediate=True)

    def get_task(self, task_id: str, tenant_id: Optional[str] = None) -> Optional[RebuildTask]:
        query = self.db.query(RebuildTask).filter(RebuildTask.id == task_id)
        if tenant_id:
            query = query.filter(RebuildTask.tenant_id == tenant_id)
        return query.first()

    def requeue_dead_letter(
        self,
        task_id: str,
        tenant_id: Optional[str] = None,
    ) -> EnqueueResult:
        """
        Requeue a task from the dead letter queue.

        OPERATOR-ONLY. The dead-lettered row stays as history; a fresh
        queued task (attempt 0) is created, or the user's existing pending
        task is pulled forward.

        Raises:
            TaskNotFoundError: If task not found
            ValueError: If task is not in dead letter status
        """
        task = self.get_task(task_id, tenant_id=tenant_id)
        if not task:
            raise TaskNotFoundError(f"Rebuild task {task_id} not found", tenant_id=tenant_id)

        if task.status != RebuildTaskStatus.DEAD_LETTER:
            raise ValueError(
                f"Rebuild task {task_id} is not in dead letter queue (status: {task.status.value})"
            )

        logger.info(
            "rebuild.dlq_requeue",
            extra={
                "original_task_id": task_id,
                "tenant_id": task.tenant_id,
                "user_id": task.user_id,
                "original_error": task.error_message,
            },
        )
        return self.enqueue(task.tenant_id, [task.user_id], reason=DLQ_REQUEUE_REASON, immediate=True)

    def requeue_all_dead_letter(self, tenant_id: str) -> EnqueueResult:
        """Requeue every dead-lettered user of a tenant."""
        user_ids = [task.user_id for task in self.list_dead_letter(tenant_id=tenant_id, limit=None)]
        return self.enqueue(tenant_id, user_ids, reason=DLQ_REQUEUE_REASON, immediate=True)

    def pending_count(self, tenant_id: Optional[str] = None) -> int:
        """Number of queued or awaiting-retry tasks."""
        query = self.db.query(RebuildTask).filter(RebuildTask.status.in_(PENDING_STATUSES))
        if tenant_id:
            query = query.filter(RebuildTask.tenant_id == tenant_id)
        return query.count()

    def oldest_pending(self, tenant_id: Optional[str] = None) -> Optional[RebuildTask]:
        """The pending task that has waited longest."""
        query = self.db.query(RebuildTask).filter(RebuildTask.status.in_(PENDING_STATUSES))
        if tenant_id:
            query = query.filter(RebuildTask.tenant_id == tenant_id)
        return query.order_by(RebuildTask.enqueued_at.asc()).first()

    def list_dead_letter(
        self,
        tenant_id: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[RebuildTask]:
        """Dead-lettered tasks, most recent first."""
        query = self.db.query(RebuildTask).filter(
            RebuildTask.status == RebuildTaskStatus.DEAD_LETTER
        )
        if tenant_id:
            query = query.filter(RebuildTask.tenant_id == tenant_id)
        query = query.order_by(RebuildTask.completed_at.desc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()
