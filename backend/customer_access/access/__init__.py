"""Query-time access enforcement: tenant isolation and customer closure filtering."""

from customer_access.access.filter import AccessFilter, AdminCapabilityCheck, RequestContext
from customer_access.access.scoped_repository import ScopedRepository

__all__ = [
    "AccessFilter",
    "AdminCapabilityCheck",
    "RequestContext",
    "ScopedRepository",
]
