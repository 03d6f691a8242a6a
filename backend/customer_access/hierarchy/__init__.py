"""Reporting hierarchy: graph loading, closure computation, invalidation."""

from customer_access.hierarchy.graph import (
    AssignmentRecord,
    AssignmentStore,
    GraphReader,
    HierarchyStore,
    ManagerEdgeRecord,
    SqlAssignmentStore,
    SqlHierarchyStore,
    TenantGraph,
)
from customer_access.hierarchy.closure import ClosureComputer, ClosureTrace, trace_closure
from customer_access.hierarchy.invalidation import (
    ChangeEvent,
    ChangeKind,
    InvalidationDetector,
)

__all__ = [
    "AssignmentRecord",
    "AssignmentStore",
    "GraphReader",
    "HierarchyStore",
    "ManagerEdgeRecord",
    "SqlAssignmentStore",
    "SqlHierarchyStore",
    "TenantGraph",
    "ClosureComputer",
    "ClosureTrace",
    "trace_closure",
    "ChangeEvent",
    "ChangeKind",
    "InvalidationDetector",
]
