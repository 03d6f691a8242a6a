"""
Base repository with tenant isolation and customer access enforcement.

CRITICAL: Every read goes through AccessFilter.access_filter().
- The tenant filter is never bypassed, not even for admins.
- Non-admins only see rows whose customer is in their closure.
"""

import logging
from abc import ABC, abstractmethod
from typing import Generic, List, Optional, TypeVar

from sqlalchemy.orm import Session

from customer_access.access.filter import AccessFilter, RequestContext
from customer_access.db_base import Base
from customer_access.errors import TenantIsolationError

logger = logging.getLogger(__name__)

# Type variable for repository models
T = TypeVar("T", bound=Base)


class ScopedRepository(Generic[T], ABC):
    """
    Base repository for customer-bearing tables.

    Subclasses name the model and its tenant and customer columns; all
    queries are scoped by tenant and filtered by customer access.
    """

    def __init__(self, db_session: Session, context: RequestContext):
        """
        Initialize repository with request context.

        Args:
            db_session: SQLAlchemy database session
            context: Caller identity (tenant, user, admin flag)

        Raises:
            ValueError: If context is missing
        """
        if context is None:
            raise ValueError("context is required")

        self.db_session = db_session
        self.context = context
        self.tenant_id = context.tenant_id
        self.access = AccessFilter(db_session, context)
        self._model_class = self._get_model_class()

    @abstractmethod
    def _get_model_class(self) -> type[T]:
        """Return the SQLAlchemy model class for this repository."""
        pass

    def _get_tenant_column_name(self) -> str:
        """Return the name of the tenant_id column in the model."""
        return "tenant_id"

    @abstractmethod
    def _get_customer_column_name(self) -> str:
        """Return the name of the column holding the customer id."""
        pass

    def _scoped_query(self):
        """
        Query over the model with tenant and customer access applied.

        This ensures NO query can return cross-tenant or inaccessible rows.
        """
        tenant_column = getattr(self._model_class, self._get_tenant_column_name())
        customer_column = getattr(self._model_class, self._get_customer_column_name())
        return self.db_session.query(self._model_class).filter(
            self.access.access_filter(tenant_column, customer_column)
        )

    def _validate_tenant_id(self, tenant_id: Optional[str], operation: str):
        """
        Validate that provided tenant_id matches the context tenant.

        SECURITY: Prevents cross-tenant operations even if tenant_id is passed.
        """
        if tenant_id and tenant_id != self.tenant_id:
            logger.error(
                "Tenant ID mismatch detected",
                extra={
                    "repository_tenant_id": self.tenant_id,
                    "provided_tenant_id": tenant_id,
                    "operation": operation
                }
            )
            raise TenantIsolationError(
                f"Tenant ID mismatch: repository scoped to {self.tenant_id}, "
                f"but operation attempted with {tenant_id}",
                tenant_id=self.tenant_id,
                offending_tenant_id=tenant_id,
            )

    def get_by_id(self, entity_id: str, tenant_id: Optional[str] = None) -> Optional[T]:
        """
        Get entity by ID if the caller may see it.

        Raises:
            TenantIsolationError: If tenant_id mismatch detected
        """
        self._validate_tenant_id(tenant_id, "get_by_id")
        return self._scoped_query().filter(self._model_class.id == entity_id).first()

    def list(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        tenant_id: Optional[str] = None
    ) -> List[T]:
        """
        Get every entity the caller may see.

        Raises:
            TenantIsolationError: If tenant_id mismatch detected
        """
        self._validate_tenant_id(tenant_id, "list")

        query = self._scoped_query().order_by(self._model_class.id)
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def count(self, tenant_id: Optional[str] = None) -> int:
        self._validate_tenant_id(tenant_id, "count")
        return self._scoped_query().count()

    def exists(self, entity_id: str, tenant_id: Optional[str] = None) -> bool:
        return self.get_by_id(entity_id, tenant_id) is not None
