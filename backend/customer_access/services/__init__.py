"""Application-facing services."""

from customer_access.services.access_engine import AccessEngine
from customer_access.services.hierarchy_mutation_service import (
    AssignmentInput,
    HierarchyMutationService,
)

__all__ = [
    "AccessEngine",
    "AssignmentInput",
    "HierarchyMutationService",
]
