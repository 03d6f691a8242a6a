"""
Rebuild task model for the closure rebuild queue.

Defines the RebuildTask model that tracks closure recomputation with:
- Tenant isolation via TenantScopedMixin
- Status tracking (queued|running|failed|dead_letter|succeeded)
- Per-user debounce window (run_after) and retry schedule (next_retry_at)
- Attempt counting bounded by the retry policy

CRITICAL: Only ONE pending (queued or failed-awaiting-retry) task per
tenant + user. Further enqueues for that user collapse into it. This is
enforced via a partial unique index and application-level checks.
"""

import enum
from datetime import datetime, timedelta

from sqlalchemy import (
    Column,
    String,
    Integer,
    Enum,
    DateTime,
    Text,
    Index,
    text,
)

from customer_access.db_base import Base
from customer_access.models.base import (
    TimestampMixin,
    TenantScopedMixin,
    generate_uuid,
    utcnow,
    as_utc,
)


class RebuildTaskStatus(str, enum.Enum):
    """Rebuild task status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"
    SUCCEEDED = "succeeded"


PENDING_STATUSES = (RebuildTaskStatus.QUEUED, RebuildTaskStatus.FAILED)

_PENDING_WHERE = text("status IN ('queued', 'failed')")


class RebuildTask(Base, TimestampMixin, TenantScopedMixin):
    """
    One user's pending or historical closure recomputation.

    Attributes:
        id: Primary key (UUID)
        tenant_id: Tenant the user belongs to
        user_id: User whose closure must be recomputed
        status: queued, running, failed, dead_letter, succeeded
        attempt: Number of executions started so far
        reason: Change kind that caused the enqueue (last one wins)
        enqueue_count: How many enqueues collapsed into this task
        enqueued_at: First enqueue (ordering key, start of debounce window)
        last_enqueued_at: Most recent collapsed enqueue
        run_after: Earliest time a queued task may start (debounce)
        next_retry_at: Earliest time a failed task may be retried
        started_at: When the current/last attempt started
        completed_at: When the task reached a terminal state
        error_code: Error category of the last failure
        error_message: Last error message
    """

    __tablename__ = "rebuild_tasks"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="User whose closure is stale"
    )

    status = Column(
        Enum(
            RebuildTaskStatus,
            name="rebuild_task_status",
            values_callable=lambda e: [member.value for member in e],
        ),
        default=RebuildTaskStatus.QUEUED,
        nullable=False,
        index=True,
        comment="Task status: queued, running, failed, dead_letter, succeeded"
    )

    attempt = Column(
        Integer,
        default=0,
        nullable=False,
        comment="Number of attempts started"
    )

    reason = Column(String(64), nullable=True)

    enqueue_count = Column(Integer, default=1, nullable=False)

    enqueued_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    last_enqueued_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    run_after = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="Debounce: task is not started before this time"
    )
    next_retry_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Scheduled time for next retry attempt"
    )
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    error_code = Column(String(50), nullable=True, index=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_rebuild_tasks_tenant_status", "tenant_id", "status"),
        Index("ix_rebuild_tasks_tenant_user", "tenant_id", "user_id"),
        # Partial unique index: only ONE pending task per tenant+user
        Index(
            "ix_rebuild_tasks_pending_unique",
            "tenant_id",
            "user_id",
            unique=True,
            postgresql_where=_PENDING_WHERE,
            sqlite_where=_PENDING_WHERE,
        ),
        Index("ix_rebuild_tasks_ready", "status", "run_after"),
        Index("ix_rebuild_tasks_retry_pending", "status", "next_retry_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RebuildTask("
            f"id={self.id}, "
            f"tenant_id={self.tenant_id}, "
            f"user_id={self.user_id}, "
            f"status={self.status.value if self.status else None}, "
            f"attempt={self.attempt}"
            f")>"
        )

    @property
    def is_pending(self) -> bool:
        """Queued, or failed and waiting for a retry."""
        return self.status in PENDING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in (RebuildTaskStatus.SUCCEEDED, RebuildTaskStatus.DEAD_LETTER)

    def collapse(
        self,
        now: datetime,
        debounce_seconds: float,
        max_debounce_seconds: float,
        reason: str | None = None,
    ) -> None:
        """
        Fold another enqueue for the same user into this pending task.

        Queued tasks use a trailing debounce: run_after slides forward with
        every enqueue but never past enqueued_at + max_debounce_seconds.
        Failed tasks keep their retry schedule.
        """
        self.last_enqueued_at = now
        self.enqueue_count = (self.enqueue_count or 1) + 1
        if reason:
            self.reason = reason
        if self.status == RebuildTaskStatus.QUEUED:
            cap = as_utc(self.enqueued_at) + timedelta(seconds=max_debounce_seconds)
            self.run_after = min(now + timedelta(seconds=debounce_seconds), cap)

    def mark_running(self) -> None:
        """Start a new attempt."""
        self.status = RebuildTaskStatus.RUNNING
        self.attempt = (self.attempt or 0) + 1
        self.started_at = utcnow()
        self.next_retry_at = None

    def mark_succeeded(self) -> None:
        self.status = RebuildTaskStatus.SUCCEEDED
        self.completed_at = utcnow()
        self.error_code = None
        self.error_message = None

    def mark_failed(
        self,
        error_message: str,
        error_code: str | None = None,
        next_retry_at: datetime | None = None,
    ) -> None:
        """
        Mark task as failed, awaiting retry.

        Args:
            error_message: Human-readable error description
            error_code: Error classification for retry decisions
            next_retry_at: When to attempt retry
        """
        self.status = RebuildTaskStatus.FAILED
        self.error_message = error_message
        self.error_code = error_code
        self.next_retry_at = next_retry_at or utcnow()

    def mark_dead_letter(self, error_message: str, error_code: str | None = None) -> None:
        """Move task to dead letter queue. Existing closure rows stay untouched."""
        self.status = RebuildTaskStatus.DEAD_LETTER
        self.error_message = error_message
        if error_code:
            self.error_code = error_code
        self.completed_at = utcnow()
        self.next_retry_at = None
