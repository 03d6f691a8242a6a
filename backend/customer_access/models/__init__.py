"""
Database models for the customer access engine.

All models follow strict tenant isolation patterns.
Tenant-scoped models inherit from TenantScopedMixin.
"""

from customer_access.models.base import TimestampMixin, TenantScopedMixin
# Hierarchy / assignment stores
from customer_access.models.hierarchy import (
    User,
    Customer,
    ManagerEdge,
    CustomerAssignment,
)
# Materialized closure
from customer_access.models.closure import ClosureEntry, ClosureState
# Rebuild queue
from customer_access.models.rebuild_task import (
    RebuildTask,
    RebuildTaskStatus,
    PENDING_STATUSES,
)

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "User",
    "Customer",
    "ManagerEdge",
    "CustomerAssignment",
    "ClosureEntry",
    "ClosureState",
    "RebuildTask",
    "RebuildTaskStatus",
    "PENDING_STATUSES",
]
