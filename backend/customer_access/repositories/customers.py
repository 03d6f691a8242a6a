"""
Customer repository with closure-based access control.

Non-admins see exactly the customers in their closure; admins see every
customer of their tenant.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from customer_access.access.scoped_repository import ScopedRepository
from customer_access.models.hierarchy import Customer

logger = logging.getLogger(__name__)


class CustomerRepository(ScopedRepository[Customer]):
    """Repository over the customers table."""

    def _get_model_class(self):
        return Customer

    def _get_customer_column_name(self) -> str:
        return "id"

    def search_by_name(self, term: str, limit: int = 50) -> list[Customer]:
        """Case-insensitive substring search within the caller's visible customers."""
        pattern = f"%{term.strip()}%"
        return (
            self._scoped_query()
            .filter(Customer.name.ilike(pattern))
            .order_by(Customer.name)
            .limit(limit)
            .all()
        )

    def create(self, name: str, customer_id: Optional[str] = None) -> Customer:
        """
        Create a customer in the caller's tenant.

        SECURITY: tenant_id always comes from the request context.
        A non-admin creator does not see the customer until it is
        assigned to them and their closure is rebuilt.
        """
        customer = Customer(tenant_id=self.tenant_id, name=name)
        if customer_id:
            customer.id = customer_id
        self.db_session.add(customer)

        try:
            self.db_session.commit()
            self.db_session.refresh(customer)
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to create customer",
                extra={"tenant_id": self.tenant_id, "error": str(e)},
            )
            raise

        logger.info(
            "Customer created",
            extra={"tenant_id": self.tenant_id, "customer_id": customer.id},
        )
        return customer
