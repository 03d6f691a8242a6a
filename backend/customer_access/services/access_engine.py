"""
Access engine facade.

Single entry point for the rest of the application:

- Query path (synchronous, read-only): access_filter, tenant_filter,
  customer_access_filter, has_access. These read only the closure table.
- Maintenance path: enqueue_invalidation(tenant_id, change) runs the
  invalidation detector and writes rebuild tasks. It never recomputes a
  closure inline; the rebuild worker does that asynchronously.

Usage:
    engine = AccessEngine(db_session)

    query = session.query(Contact).filter(
        engine.access_filter(tenant_id, user_id, is_admin,
                             Contact.tenant_id, Contact.customer_id)
    )

    engine.enqueue_invalidation(
        tenant_id, ChangeEvent.assignment_added(tenant_id, user_id, customer_id)
    )
"""

import logging
from typing import Any, FrozenSet, Iterable, List, Optional, Set, Union

from sqlalchemy.orm import Session

from customer_access.access.filter import AccessFilter, AdminCapabilityCheck, RequestContext
from customer_access.config.rebuild_settings import RebuildSettings, get_rebuild_settings
from customer_access.hierarchy.closure import ClosureComputer
from customer_access.hierarchy.graph import GraphReader
from customer_access.hierarchy.invalidation import ChangeEvent, ChangeKind, InvalidationDetector
from customer_access.jobs.rebuild_scheduler import EnqueueResult, RebuildScheduler
from customer_access.monitoring.rebuild_metrics import get_rebuild_metrics
from customer_access.repositories.closure_repo import ClosureTable, StalenessReport

logger = logging.getLogger(__name__)


class AccessEngine:
    """Facade over the access filter, closure table and rebuild pipeline."""

    def __init__(
        self,
        db_session: Session,
        settings: Optional[RebuildSettings] = None,
        graph_reader: Optional[GraphReader] = None,
        is_admin_capable: Optional[AdminCapabilityCheck] = None,
    ):
        """
        Args:
            db_session: Database session
            settings: Rebuild settings (loaded from config when omitted)
            graph_reader: Graph reader (SQL stores on db_session by default)
            is_admin_capable: Permission-registry predicate used by
                context_from_permissions(). Without it nobody is admin.
        """
        self.db = db_session
        self.settings = settings or get_rebuild_settings()
        self.graph_reader = graph_reader or GraphReader.for_session(db_session)
        self.computer = ClosureComputer(self.graph_reader)
        self.scheduler = RebuildScheduler(db_session, self.settings)
        self.detector = InvalidationDetector(
            self.graph_reader,
            tenant_user_ids=self.tenant_user_ids,
            settings=self.settings,
        )
        self.is_admin_capable = is_admin_capable
        self.metrics = get_rebuild_metrics()

    # ------------------------------------------------------------------
    # Request context
    # ------------------------------------------------------------------

    def context(self, tenant_id: str, user_id: str, is_admin: bool = False) -> RequestContext:
        return RequestContext(tenant_id=tenant_id, user_id=user_id, is_admin=is_admin)

    def context_from_permissions(
        self,
        tenant_id: str,
        user_id: str,
        permissions: Optional[Iterable[Any]],
    ) -> RequestContext:
        return RequestContext.from_permissions(
            tenant_id, user_id, permissions, is_admin_capable=self.is_admin_capable
        )

    def filter_for(self, context: RequestContext) -> AccessFilter:
        return AccessFilter(self.db, context)

    # ------------------------------------------------------------------
    # Query path
    # ------------------------------------------------------------------

    def tenant_filter(self, tenant_id: str, tenant_column):
        """tenant_column == tenant_id. Applied to every query, admins included."""
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")
        return tenant_column == tenant_id

    def customer_access_filter(self, tenant_id: str, user_id: str, is_admin: bool, customer_column):
        return self.filter_for(self.context(tenant_id, user_id, is_admin)).customer_access_filter(
            customer_column
        )

    def access_filter(
        self,
        tenant_id: str,
        user_id: str,
        is_admin: bool,
        tenant_column,
        customer_column,
    ):
        """Combined tenant and customer predicate for a caller."""
        return self.filter_for(self.context(tenant_id, user_id, is_admin)).access_filter(
            tenant_column, customer_column
        )

    def has_access(self, tenant_id: str, user_id: str, is_admin: bool, customer_id: str) -> bool:
        return self.filter_for(self.context(tenant_id, user_id, is_admin)).has_access(customer_id)

    def accessible_customer_ids(self, tenant_id: str, user_id: str) -> FrozenSet[str]:
        """The materialized closure of a user (possibly stale)."""
        return ClosureTable(self.db, tenant_id).get_user_closure(user_id)

    def users_with_access(self, tenant_id: str, customer_id: str) -> List[str]:
        return ClosureTable(self.db, tenant_id).users_with_access(customer_id)

    def staleness(self, tenant_id: str, user_id: str) -> StalenessReport:
        return ClosureTable(self.db, tenant_id).staleness(user_id)

    # ------------------------------------------------------------------
    # Maintenance path
    # ------------------------------------------------------------------

    def compute_closure(self, tenant_id: str, user_id: str) -> FrozenSet[str]:
        """Compute a user's closure from the live stores, bypassing the table."""
        return self.computer.compute_closure(tenant_id, user_id)

    def tenant_user_ids(self, tenant_id: str) -> Set[str]:
        """Every user of the tenant plus every user still holding closure rows."""
        users = set(self.graph_reader.list_tenant_user_ids(tenant_id))
        users.update(ClosureTable(self.db, tenant_id).list_user_ids())
        return users

    def affected_users(self, tenant_id: str, change: ChangeEvent) -> FrozenSet[str]:
        return self.detector.affected_users(tenant_id, change)

    def enqueue_invalidation(
        self,
        tenant_id: str,
        change: Union[ChangeEvent, dict],
    ) -> EnqueueResult:
        """
        Schedule rebuilds for every user a committed change made stale.

        Call after the mutation's transaction has committed. Returns once
        the tasks are written.

        Raises:
            InvalidChangeEventError: If a raw payload is malformed
            TenantIsolationError: If the event belongs to another tenant
        """
        if not isinstance(change, ChangeEvent):
            change = ChangeEvent.parse(change)

        affected = self.detector.affected_users(tenant_id, change)
        result = self.scheduler.enqueue(
            tenant_id,
            sorted(affected),
            reason=change.kind.value,
            immediate=change.kind == ChangeKind.TENANT_REBUILD,
        )
        self.metrics.record_enqueued(
            tenant_id=tenant_id,
            created=len(result.created),
            collapsed=len(result.collapsed),
            reason=change.kind.value,
        )
        return result

    def request_tenant_rebuild(self, tenant_id: str) -> EnqueueResult:
        """Queue every user of the tenant for an immediate rebuild."""
        return self.enqueue_invalidation(tenant_id, ChangeEvent.tenant_rebuild(tenant_id))
