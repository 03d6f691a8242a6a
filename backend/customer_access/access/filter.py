"""
Query-time access filter.

Turns a request context into SQLAlchemy predicates against the closure
table. Two independent layers:

- tenant filter: tenant_column == context.tenant_id. ALWAYS applied,
  including for administrators.
- customer filter: customer_column IN (closure of context.user_id).
  Administrators bypass this layer only.

The filter reads only the closure table, never the live hierarchy, and
never writes or schedules rebuilds.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Iterable, Optional

from sqlalchemy import and_, exists, select, true
from sqlalchemy.orm import Session

from customer_access.models.closure import ClosureEntry
from customer_access.models.hierarchy import Customer

logger = logging.getLogger(__name__)

# Opaque predicate owned by the permission registry
AdminCapabilityCheck = Callable[[Any], bool]


@dataclass(frozen=True)
class RequestContext:
    """
    Identity of the caller for one request.

    Attributes:
        tenant_id: Tenant the request runs in (from the authenticated session)
        user_id: Acting user
        is_admin: Whether the caller holds the customer-filter bypass
    """
    tenant_id: str
    user_id: str
    is_admin: bool = False

    def __post_init__(self):
        if not self.tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")
        if not self.user_id:
            raise ValueError("user_id is required and cannot be empty")

    @classmethod
    def from_permissions(
        cls,
        tenant_id: str,
        user_id: str,
        permissions: Optional[Iterable[Any]] = None,
        is_admin_capable: Optional[AdminCapabilityCheck] = None,
    ) -> "RequestContext":
        """
        Build a context, deriving is_admin from the permission registry.

        Fails closed: a missing predicate, missing permissions, or a
        predicate that raises all yield is_admin=False.
        """
        is_admin = False
        if is_admin_capable is not None and permissions is not None:
            try:
                is_admin = bool(is_admin_capable(permissions))
            except Exception as e:
                logger.warning(
                    "Admin capability check failed, treating caller as non-admin",
                    extra={"tenant_id": tenant_id, "user_id": user_id, "error": str(e)},
                )
                is_admin = False
        return cls(tenant_id=tenant_id, user_id=user_id, is_admin=is_admin)


class AccessFilter:
    """Builds tenant and customer predicates for one request context."""

    def __init__(self, db_session: Session, context: RequestContext):
        self.db_session = db_session
        self.context = context

    def _closure_customer_ids(self):
        return select(ClosureEntry.customer_id).where(
            ClosureEntry.tenant_id == self.context.tenant_id,
            ClosureEntry.user_id == self.context.user_id,
        )

    def tenant_filter(self, tenant_column):
        """MUST be part of every query. Never bypassed, even for admins."""
        return tenant_column == self.context.tenant_id

    def customer_access_filter(self, customer_column):
        """Customers the caller may see. Admins see every customer of the tenant."""
        if self.context.is_admin:
            return true()
        return customer_column.in_(self._closure_customer_ids())

    def access_filter(self, tenant_column, customer_column):
        """Tenant AND customer filter; for admins, only the tenant filter."""
        if self.context.is_admin:
            return self.tenant_filter(tenant_column)
        return and_(
            self.tenant_filter(tenant_column),
            self.customer_access_filter(customer_column),
        )

    def has_access(self, customer_id: str) -> bool:
        """
        Point check for one customer.

        Admins have access to any customer of their own tenant and to
        nothing outside it.
        """
        if self.context.is_admin:
            stmt = select(
                exists().where(
                    Customer.id == customer_id,
                    Customer.tenant_id == self.context.tenant_id,
                )
            )
        else:
            stmt = select(
                exists().where(
                    ClosureEntry.tenant_id == self.context.tenant_id,
                    ClosureEntry.user_id == self.context.user_id,
                    ClosureEntry.customer_id == customer_id,
                )
            )
        return bool(self.db_session.execute(stmt).scalar())

    def accessible_customer_ids(self) -> Optional[FrozenSet[str]]:
        """
        The caller's closure, or None for admins (unrestricted within tenant).
        """
        if self.context.is_admin:
            return None
        return frozenset(self.db_session.execute(self._closure_customer_ids()).scalars())
