"""
Graph reader for the reporting hierarchy.

Loads manager edges and direct customer assignments for a tenant (or for
the subtree below one user) into an in-memory TenantGraph for traversal.

TenantGraph uses arena-style indices: every user ID is interned to a
dense int, and adjacency is stored as lists of ints in both directions:
- reports:  manager -> direct reports (used to compute closures, downward)
- managers: report  -> direct managers (used to find ancestors, upward)

The stores are external collaborators. SqlHierarchyStore and
SqlAssignmentStore read them through SQLAlchemy; tests and other
deployments can pass any object satisfying the store protocols.

SECURITY: every record read is checked against the requested tenant.
A foreign-tenant row raises TenantIsolationError.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import (
    AbstractSet,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
)

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from customer_access.errors import (
    GraphReadError,
    RebuildTimeoutError,
    TenantIsolationError,
)
from customer_access.models.base import utcnow
from customer_access.models.hierarchy import User, ManagerEdge, CustomerAssignment

logger = logging.getLogger(__name__)

_EMPTY: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class ManagerEdgeRecord:
    """report_id reports to manager_id, within tenant_id."""
    tenant_id: str
    report_id: str
    manager_id: str


@dataclass(frozen=True)
class AssignmentRecord:
    """customer_id is directly assigned to user_id, within tenant_id."""
    tenant_id: str
    user_id: str
    customer_id: str


class HierarchyStore(Protocol):
    """Read interface of the hierarchy store."""

    def list_manager_edges(self, tenant_id: str) -> List[ManagerEdgeRecord]:
        ...

    def list_reports_of(self, tenant_id: str, manager_id: str) -> List[ManagerEdgeRecord]:
        ...

    def list_tenant_user_ids(self, tenant_id: str) -> List[str]:
        ...


class AssignmentStore(Protocol):
    """Read interface of the assignment store."""

    def list_direct_assignments(self, tenant_id: str, user_id: str) -> List[AssignmentRecord]:
        ...

    def list_tenant_assignments(self, tenant_id: str) -> List[AssignmentRecord]:
        ...


class SqlHierarchyStore:
    """HierarchyStore over the users / user_managers tables."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def list_manager_edges(self, tenant_id: str) -> List[ManagerEdgeRecord]:
        try:
            rows = self.db.execute(
                select(ManagerEdge.tenant_id, ManagerEdge.report_id, ManagerEdge.manager_id)
                .where(ManagerEdge.tenant_id == tenant_id)
            ).all()
        except SQLAlchemyError as e:
            raise GraphReadError(f"Failed to read manager edges: {e}", tenant_id=tenant_id) from e
        return [ManagerEdgeRecord(*row) for row in rows]

    def list_reports_of(self, tenant_id: str, manager_id: str) -> List[ManagerEdgeRecord]:
        try:
            rows = self.db.execute(
                select(ManagerEdge.tenant_id, ManagerEdge.report_id, ManagerEdge.manager_id)
                .where(
                    ManagerEdge.tenant_id == tenant_id,
                    ManagerEdge.manager_id == manager_id,
                )
            ).all()
        except SQLAlchemyError as e:
            raise GraphReadError(f"Failed to read direct reports: {e}", tenant_id=tenant_id) from e
        return [ManagerEdgeRecord(*row) for row in rows]

    def list_tenant_user_ids(self, tenant_id: str) -> List[str]:
        try:
            return list(
                self.db.execute(
                    select(User.id).where(User.tenant_id == tenant_id)
                ).scalars()
            )
        except SQLAlchemyError as e:
            raise GraphReadError(f"Failed to read tenant users: {e}", tenant_id=tenant_id) from e


class SqlAssignmentStore:
    """AssignmentStore over the user_customers table."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _select(self):
        return select(
            CustomerAssignment.tenant_id,
            CustomerAssignment.user_id,
            CustomerAssignment.customer_id,
        )

    def list_direct_assignments(self, tenant_id: str, user_id: str) -> List[AssignmentRecord]:
        try:
            rows = self.db.execute(
                self._select().where(
                    CustomerAssignment.tenant_id == tenant_id,
                    CustomerAssignment.user_id == user_id,
                )
            ).all()
        except SQLAlchemyError as e:
            raise GraphReadError(f"Failed to read assignments: {e}", tenant_id=tenant_id) from e
        return [AssignmentRecord(*row) for row in rows]

    def list_tenant_assignments(self, tenant_id: str) -> List[AssignmentRecord]:
        try:
            rows = self.db.execute(
                self._select().where(CustomerAssignment.tenant_id == tenant_id)
            ).all()
        except SQLAlchemyError as e:
            raise GraphReadError(f"Failed to read assignments: {e}", tenant_id=tenant_id) from e
        return [AssignmentRecord(*row) for row in rows]


class TenantGraph:
    """
    Immutable in-memory reporting graph for one tenant.

    Build with TenantGraph.from_records(); every record must belong to the
    graph's tenant.
    """

    def __init__(self, tenant_id: str, snapshot_at: Optional[datetime] = None):
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")
        self.tenant_id = tenant_id
        self.snapshot_at = snapshot_at or utcnow()
        self._index: Dict[str, int] = {}
        self._user_ids: List[str] = []
        self._reports: List[List[int]] = []
        self._managers: List[List[int]] = []
        self._assignments: List[Set[str]] = []
        self._edges: Set[tuple] = set()

    @classmethod
    def from_records(
        cls,
        tenant_id: str,
        edges: Iterable[ManagerEdgeRecord] = (),
        assignments: Iterable[AssignmentRecord] = (),
        user_ids: Iterable[str] = (),
        snapshot_at: Optional[datetime] = None,
    ) -> "TenantGraph":
        graph = cls(tenant_id, snapshot_at=snapshot_at)
        for user_id in user_ids:
            graph._intern(user_id)
        for edge in edges:
            graph._check_tenant(edge.tenant_id, "manager_edge")
            graph._add_edge(edge.report_id, edge.manager_id)
        for assignment in assignments:
            graph._check_tenant(assignment.tenant_id, "assignment")
            graph._add_assignment(assignment.user_id, assignment.customer_id)
        return graph

    def _check_tenant(self, record_tenant_id: str, record_type: str) -> None:
        if record_tenant_id != self.tenant_id:
            logger.error(
                "Cross-tenant record in hierarchy graph",
                extra={
                    "tenant_id": self.tenant_id,
                    "record_tenant_id": record_tenant_id,
                    "record_type": record_type,
                },
            )
            raise TenantIsolationError(
                f"{record_type} from tenant {record_tenant_id} loaded into graph "
                f"for tenant {self.tenant_id}",
                tenant_id=self.tenant_id,
                offending_tenant_id=record_tenant_id,
            )

    def _intern(self, user_id: str) -> int:
        idx = self._index.get(user_id)
        if idx is None:
            idx = len(self._user_ids)
            self._index[user_id] = idx
            self._user_ids.append(user_id)
            self._reports.append([])
            self._managers.append([])
            self._assignments.append(set())
        return idx

    def _add_edge(self, report_id: str, manager_id: str) -> None:
        report = self._intern(report_id)
        manager = self._intern(manager_id)
        if (report, manager) in self._edges:
            return
        self._edges.add((report, manager))
        self._reports[manager].append(report)
        self._managers[report].append(manager)

    def _add_assignment(self, user_id: str, customer_id: str) -> None:
        self._assignments[self._intern(user_id)].add(customer_id)

    def __len__(self) -> int:
        return len(self._user_ids)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._index

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    @property
    def user_ids(self) -> List[str]:
        return list(self._user_ids)

    def index_of(self, user_id: str) -> Optional[int]:
        return self._index.get(user_id)

    def user_id_at(self, idx: int) -> str:
        return self._user_ids[idx]

    def reports_of(self, idx: int) -> Sequence[int]:
        return self._reports[idx]

    def managers_of(self, idx: int) -> Sequence[int]:
        return self._managers[idx]

    def assignments_of(self, idx: int) -> AbstractSet[str]:
        return self._assignments[idx]

    def direct_assignments(self, user_id: str) -> FrozenSet[str]:
        idx = self._index.get(user_id)
        if idx is None:
            return _EMPTY
        return frozenset(self._assignments[idx])

    def ancestors(self, user_id: str, limit: Optional[int] = None) -> Optional[Set[str]]:
        """
        Every user reachable by following report -> manager edges from user_id.

        The user itself is only included if it sits on a cycle. Returns None
        when more than `limit` ancestors are found.
        """
        start = self._index.get(user_id)
        if start is None:
            return set()

        visited = bytearray(len(self._user_ids))
        found: Set[str] = set()
        frontier = deque([start])
        while frontier:
            idx = frontier.popleft()
            for manager in self._managers[idx]:
                if visited[manager]:
                    continue
                visited[manager] = 1
                found.add(self._user_ids[manager])
                if limit is not None and len(found) > limit:
                    return None
                frontier.append(manager)
        return found


def check_deadline(deadline: Optional[float], tenant_id: str) -> None:
    """Raise RebuildTimeoutError once the monotonic deadline has passed."""
    if deadline is not None and time.monotonic() > deadline:
        raise RebuildTimeoutError("Closure recomputation exceeded its deadline", tenant_id=tenant_id)


class GraphReader:
    """
    Loads TenantGraphs from the hierarchy and assignment stores.

    load_tenant() reads the whole tenant in two queries; load_subtree()
    walks downward from one user with list_reports_of and only reads the
    users it reaches.
    """

    def __init__(self, hierarchy_store: HierarchyStore, assignment_store: AssignmentStore):
        self.hierarchy_store = hierarchy_store
        self.assignment_store = assignment_store

    @classmethod
    def for_session(cls, db_session: Session) -> "GraphReader":
        return cls(SqlHierarchyStore(db_session), SqlAssignmentStore(db_session))

    def load_tenant(self, tenant_id: str) -> TenantGraph:
        """Load every edge and assignment of the tenant."""
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")

        snapshot_at = utcnow()
        edges = self.hierarchy_store.list_manager_edges(tenant_id)
        assignments = self.assignment_store.list_tenant_assignments(tenant_id)
        graph = TenantGraph.from_records(
            tenant_id,
            edges=edges,
            assignments=assignments,
            snapshot_at=snapshot_at,
        )

        logger.debug(
            "hierarchy.graph_loaded",
            extra={
                "tenant_id": tenant_id,
                "users": len(graph),
                "edges": graph.edge_count,
                "assignments": len(assignments),
            },
        )
        return graph

    def load_subtree(
        self,
        tenant_id: str,
        root_user_id: str,
        deadline: Optional[float] = None,
    ) -> TenantGraph:
        """
        Load root_user_id and everyone below it.

        Breadth-first over list_reports_of with a visited set, so cycles in
        the stored edges cannot make the load loop.
        """
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")

        snapshot_at = utcnow()
        edges: List[ManagerEdgeRecord] = []
        assignments: List[AssignmentRecord] = []
        visited = {root_user_id}
        frontier = deque([root_user_id])

        while frontier:
            check_deadline(deadline, tenant_id)
            user_id = frontier.popleft()
            assignments.extend(self.assignment_store.list_direct_assignments(tenant_id, user_id))
            for edge in self.hierarchy_store.list_reports_of(tenant_id, user_id):
                edges.append(edge)
                if edge.report_id not in visited:
                    visited.add(edge.report_id)
                    frontier.append(edge.report_id)

        return TenantGraph.from_records(
            tenant_id,
            edges=edges,
            assignments=assignments,
            user_ids=[root_user_id],
            snapshot_at=snapshot_at,
        )

    def list_tenant_user_ids(self, tenant_id: str) -> List[str]:
        return self.hierarchy_store.list_tenant_user_ids(tenant_id)
