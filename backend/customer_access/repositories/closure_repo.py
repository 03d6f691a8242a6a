"""
Closure table repository.

The closure table is the single source of truth for access decisions.
Readers (the access filter, reverse lookups, staleness reports) may run
with any concurrency. The only writer is replace_user_closure(), called
by the rebuild worker, which swaps one user's rows atomically:

    BEGIN
      DELETE FROM closure_entries WHERE tenant_id = ? AND user_id = ?
      INSERT INTO closure_entries ... (the freshly computed set)
      UPSERT closure_states (version + 1, snapshot_at, rebuilt_at)
    COMMIT

A reader therefore sees either the old complete set or the new complete
set. On failure the transaction is rolled back and the old set stays.

CRITICAL: The repository is bound to one tenant. Every read and write is
scoped by tenant_id, and a swap that would reference a user or customer
of another tenant raises TenantIsolationError.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional

from sqlalchemy import delete, exists, insert, select, union
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from customer_access.errors import ClosureSwapError, TenantIsolationError
from customer_access.models.base import as_utc, utcnow
from customer_access.models.closure import ClosureEntry, ClosureState
from customer_access.models.hierarchy import Customer, User
from customer_access.models.rebuild_task import PENDING_STATUSES, RebuildTask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwapResult:
    """
    Outcome of a closure swap.

    Attributes:
        applied: False when skipped because a newer snapshot is already stored
        version: Closure version after the call
        entry_count: Rows for the user after the call
        added: Customers gained by this swap
        removed: Customers lost by this swap
    """
    applied: bool
    version: int
    entry_count: int
    added: FrozenSet[str] = frozenset()
    removed: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class StalenessReport:
    """
    How fresh one user's closure is.

    Attributes:
        version: Closure version (0 if never built)
        rebuilt_at: When the current closure was committed
        snapshot_at: When the graph behind the current closure was read
        pending: Whether a rebuild task is queued or awaiting retry
        pending_since: First enqueue of the pending task
        lag_seconds: Seconds since pending_since (0 when not pending)
    """
    version: int
    rebuilt_at: Optional[datetime]
    snapshot_at: Optional[datetime]
    pending: bool
    pending_since: Optional[datetime]
    lag_seconds: float

    @property
    def is_stale(self) -> bool:
        return self.pending


class ClosureTable:
    """Tenant-bound access to closure_entries and closure_states."""

    def __init__(self, db_session: Session, tenant_id: str):
        """
        Args:
            db_session: SQLAlchemy database session
            tenant_id: Tenant identifier

        Raises:
            ValueError: If tenant_id is empty or None
        """
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")

        self.db_session = db_session
        self.tenant_id = tenant_id

    def _validate_tenant_id(self, tenant_id: Optional[str], operation: str) -> None:
        """Reject calls that name a tenant other than the repository's."""
        if tenant_id and tenant_id != self.tenant_id:
            logger.error(
                "Tenant ID mismatch detected",
                extra={
                    "repository_tenant_id": self.tenant_id,
                    "provided_tenant_id": tenant_id,
                    "operation": operation,
                },
            )
            raise TenantIsolationError(
                f"Tenant ID mismatch: repository scoped to {self.tenant_id}, "
                f"but operation attempted with {tenant_id}",
                tenant_id=self.tenant_id,
                offending_tenant_id=tenant_id,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def customer_ids_subquery(self, user_id: str):
        """SELECT customer_id for one user, for use in IN (...) filters."""
        return select(ClosureEntry.customer_id).where(
            ClosureEntry.tenant_id == self.tenant_id,
            ClosureEntry.user_id == user_id,
        )

    def get_user_closure(self, user_id: str) -> FrozenSet[str]:
        """Every customer currently materialized for user_id."""
        return frozenset(self.db_session.execute(self.customer_ids_subquery(user_id)).scalars())

    def has_entry(self, user_id: str, customer_id: str) -> bool:
        """Indexed point lookup."""
        stmt = select(
            exists().where(
                ClosureEntry.tenant_id == self.tenant_id,
                ClosureEntry.user_id == user_id,
                ClosureEntry.customer_id == customer_id,
            )
        )
        return bool(self.db_session.execute(stmt).scalar())

    def users_with_access(self, customer_id: str) -> List[str]:
        """Reverse lookup: who can see this customer."""
        stmt = (
            select(ClosureEntry.user_id)
            .where(
                ClosureEntry.tenant_id == self.tenant_id,
                ClosureEntry.customer_id == customer_id,
            )
            .order_by(ClosureEntry.user_id)
        )
        return list(self.db_session.execute(stmt).scalars())

    def list_user_ids(self) -> List[str]:
        """Every user that has (or had) a materialized closure in the tenant."""
        stmt = union(
            select(ClosureEntry.user_id).where(ClosureEntry.tenant_id == self.tenant_id),
            select(ClosureState.user_id).where(ClosureState.tenant_id == self.tenant_id),
        )
        return sorted(self.db_session.execute(stmt).scalars())

    def get_state(self, user_id: str) -> Optional[ClosureState]:
        return self.db_session.get(ClosureState, (self.tenant_id, user_id))

    def staleness(self, user_id: str) -> StalenessReport:
        """Report the version of user_id's closure and whether a rebuild is pending."""
        state = self.get_state(user_id)
        pending_task = (
            self.db_session.query(RebuildTask)
            .filter(
                RebuildTask.tenant_id == self.tenant_id,
                RebuildTask.user_id == user_id,
                RebuildTask.status.in_(PENDING_STATUSES),
            )
            .order_by(RebuildTask.enqueued_at.asc())
            .first()
        )
        pending_since = as_utc(pending_task.enqueued_at) if pending_task else None
        lag = (utcnow() - pending_since).total_seconds() if pending_since else 0.0
        return StalenessReport(
            version=state.version if state else 0,
            rebuilt_at=as_utc(state.rebuilt_at) if state else None,
            snapshot_at=as_utc(state.snapshot_at) if state else None,
            pending=pending_task is not None,
            pending_since=pending_since,
            lag_seconds=max(lag, 0.0),
        )

    # ------------------------------------------------------------------
    # Write (rebuild worker only)
    # ------------------------------------------------------------------

    def _assert_same_tenant(self, user_id: str, customer_ids: FrozenSet[str]) -> None:
        """Refuse to materialize rows naming entities of another tenant."""
        foreign_user = self.db_session.execute(
            select(User.tenant_id).where(User.id == user_id, User.tenant_id != self.tenant_id)
        ).scalar()
        if foreign_user is not None:
            raise TenantIsolationError(
                f"User {user_id} belongs to tenant {foreign_user}, not {self.tenant_id}",
                tenant_id=self.tenant_id,
                offending_tenant_id=foreign_user,
            )
        if not customer_ids:
            return
        foreign_customer = self.db_session.execute(
            select(Customer.id, Customer.tenant_id)
            .where(Customer.id.in_(customer_ids), Customer.tenant_id != self.tenant_id)
            .limit(1)
        ).first()
        if foreign_customer is not None:
            raise TenantIsolationError(
                f"Customer {foreign_customer.id} belongs to tenant "
                f"{foreign_customer.tenant_id}, not {self.tenant_id}",
                tenant_id=self.tenant_id,
                offending_tenant_id=foreign_customer.tenant_id,
            )

    def replace_user_closure(
        self,
        user_id: str,
        customer_ids: Iterable[str],
        snapshot_at: datetime,
        tenant_id: Optional[str] = None,
    ) -> SwapResult:
        """
        Atomically replace user_id's closure with customer_ids.

        Skipped (applied=False) when the stored closure was computed from a
        newer graph snapshot than this one.

        Raises:
            TenantIsolationError: Cross-tenant user or customer (nothing written)
            ClosureSwapError: Storage failure (rolled back, old closure intact)
        """
        self._validate_tenant_id(tenant_id, "replace_user_closure")
        new_set = frozenset(customer_ids)
        snapshot_at = as_utc(snapshot_at)

        try:
            self._assert_same_tenant(user_id, new_set)

            state = self.db_session.execute(
                select(ClosureState)
                .where(
                    ClosureState.tenant_id == self.tenant_id,
                    ClosureState.user_id == user_id,
                )
                .with_for_update()
            ).scalar_one_or_none()

            if state is not None and as_utc(state.snapshot_at) > snapshot_at:
                self.db_session.rollback()
                logger.info(
                    "closure.swap_skipped_newer_snapshot",
                    extra={
                        "tenant_id": self.tenant_id,
                        "user_id": user_id,
                        "stored_snapshot_at": as_utc(state.snapshot_at).isoformat(),
                        "snapshot_at": snapshot_at.isoformat(),
                    },
                )
                return SwapResult(applied=False, version=state.version, entry_count=state.entry_count)

            old_set = self.get_user_closure(user_id)
            now = utcnow()

            self.db_session.execute(
                delete(ClosureEntry).where(
                    ClosureEntry.tenant_id == self.tenant_id,
                    ClosureEntry.user_id == user_id,
                )
            )
            if new_set:
                self.db_session.execute(
                    insert(ClosureEntry),
                    [
                        {
                            "tenant_id": self.tenant_id,
                            "user_id": user_id,
                            "customer_id": customer_id,
                            "rebuilt_at": now,
                        }
                        for customer_id in sorted(new_set)
                    ],
                )

            if state is None:
                state = ClosureState(
                    tenant_id=self.tenant_id,
                    user_id=user_id,
                    version=0,
                )
                self.db_session.add(state)
            state.version = (state.version or 0) + 1
            state.entry_count = len(new_set)
            state.rebuilt_at = now
            state.snapshot_at = snapshot_at

            self.db_session.commit()
        except TenantIsolationError:
            self.db_session.rollback()
            raise
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Closure swap failed",
                extra={
                    "tenant_id": self.tenant_id,
                    "user_id": user_id,
                    "error": str(e),
                },
            )
            raise ClosureSwapError(
                f"Closure swap failed for user {user_id}: {e}",
                tenant_id=self.tenant_id,
                user_id=user_id,
            ) from e

        result = SwapResult(
            applied=True,
            version=state.version,
            entry_count=len(new_set),
            added=new_set - old_set,
            removed=old_set - new_set,
        )
        logger.info(
            "closure.swapped",
            extra={
                "tenant_id": self.tenant_id,
                "user_id": user_id,
                "version": result.version,
                "entry_count": result.entry_count,
                "added": len(result.added),
                "removed": len(result.removed),
            },
        )
        return result
