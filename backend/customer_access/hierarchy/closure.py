"""
Closure computation.

A user can see a customer if the customer is directly assigned to the
user, or to anyone in the user's reporting subtree (anyone with a chain
of "reports to" edges ending at the user).

    closure(u) = union of direct assignments over {u} + descendants(u)

Traversal is breadth-first over the manager -> reports adjacency with an
explicit visited set, so it terminates on any edge set, including the
cycles the schema cannot rule out. A cycle is a data-integrity bug, not
a crash: it is logged and reported, and the closure is still returned.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from customer_access.errors import TenantIsolationError
from customer_access.hierarchy.graph import GraphReader, TenantGraph, check_deadline

logger = logging.getLogger(__name__)

# Called with (tenant_id, root_user_id, user ids whose reports lead back into the cycle)
CycleListener = Callable[[str, str, List[str]], None]


@dataclass(frozen=True)
class ClosureTrace:
    """
    Result of one closure traversal.

    Attributes:
        user_id: Root of the traversal
        customer_ids: Every customer visible to user_id
        visited_count: Users visited, root included
        cycle_user_ids: Users with an edge back to the root or to themselves
    """
    user_id: str
    customer_ids: FrozenSet[str]
    visited_count: int
    cycle_user_ids: List[str] = field(default_factory=list)

    @property
    def has_cycle(self) -> bool:
        return bool(self.cycle_user_ids)


def trace_closure(
    graph: TenantGraph,
    user_id: str,
    deadline: Optional[float] = None,
) -> ClosureTrace:
    """
    Compute the closure of user_id over an already-loaded graph.

    Args:
        graph: Tenant graph to traverse
        user_id: Root user
        deadline: Optional time.monotonic() deadline

    Returns:
        ClosureTrace for user_id. Users unknown to the graph have an
        empty closure.

    Raises:
        RebuildTimeoutError: If the deadline passes mid-traversal
    """
    root = graph.index_of(user_id)
    if root is None:
        return ClosureTrace(user_id=user_id, customer_ids=frozenset(), visited_count=0)

    visited = bytearray(len(graph))
    visited[root] = 1
    visited_count = 1
    frontier = deque([root])
    customers = set()
    cycle_users: List[str] = []

    while frontier:
        check_deadline(deadline, graph.tenant_id)
        idx = frontier.popleft()
        customers.update(graph.assignments_of(idx))
        for report in graph.reports_of(idx):
            if report == root or report == idx:
                cycle_users.append(graph.user_id_at(idx))
            if visited[report]:
                continue
            visited[report] = 1
            visited_count += 1
            frontier.append(report)

    return ClosureTrace(
        user_id=user_id,
        customer_ids=frozenset(customers),
        visited_count=visited_count,
        cycle_user_ids=cycle_users,
    )


class ClosureComputer:
    """
    Computes user closures from the hierarchy and assignment stores.

    compute_closure() loads only the user's subtree. The rebuild worker
    loads a whole tenant once and calls compute_many() for every user in
    the claimed batch.
    """

    def __init__(
        self,
        graph_reader: GraphReader,
        on_cycle: Optional[CycleListener] = None,
    ):
        self.graph_reader = graph_reader
        self.on_cycle = on_cycle

    def compute_closure(
        self,
        tenant_id: str,
        user_id: str,
        deadline: Optional[float] = None,
    ) -> FrozenSet[str]:
        """Return every customer user_id can see, from the live stores."""
        graph = self.graph_reader.load_subtree(tenant_id, user_id, deadline=deadline)
        return self.compute_from_graph(graph, tenant_id, user_id, deadline=deadline)

    def compute_from_graph(
        self,
        graph: TenantGraph,
        tenant_id: str,
        user_id: str,
        deadline: Optional[float] = None,
    ) -> FrozenSet[str]:
        return self.trace(graph, tenant_id, user_id, deadline=deadline).customer_ids

    def trace(
        self,
        graph: TenantGraph,
        tenant_id: str,
        user_id: str,
        deadline: Optional[float] = None,
    ) -> ClosureTrace:
        self._check_graph_tenant(graph, tenant_id)
        result = trace_closure(graph, user_id, deadline=deadline)
        if result.has_cycle:
            self._report_cycle(tenant_id, user_id, result.cycle_user_ids)
        return result

    def compute_many(
        self,
        graph: TenantGraph,
        tenant_id: str,
        user_ids: Iterable[str],
        deadline: Optional[float] = None,
    ) -> Dict[str, FrozenSet[str]]:
        """Closures for several users over one loaded graph."""
        return {
            user_id: self.trace(graph, tenant_id, user_id, deadline=deadline).customer_ids
            for user_id in user_ids
        }

    def _check_graph_tenant(self, graph: TenantGraph, tenant_id: str) -> None:
        if graph.tenant_id != tenant_id:
            logger.error(
                "Closure requested across tenants",
                extra={"tenant_id": tenant_id, "graph_tenant_id": graph.tenant_id},
            )
            raise TenantIsolationError(
                f"Graph for tenant {graph.tenant_id} used to compute closure in tenant {tenant_id}",
                tenant_id=tenant_id,
                offending_tenant_id=graph.tenant_id,
            )

    def _report_cycle(self, tenant_id: str, user_id: str, cycle_user_ids: List[str]) -> None:
        logger.warning(
            "hierarchy.cycle_detected",
            extra={
                "tenant_id": tenant_id,
                "user_id": user_id,
                "cycle_user_ids": cycle_user_ids,
            },
        )
        if self.on_cycle is not None:
            self.on_cycle(tenant_id, user_id, cycle_user_ids)
