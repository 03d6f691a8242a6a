"""
Hierarchy mutation service.

Write paths for the reporting hierarchy and customer assignments:
- add / remove / replace managers of a user
- add / remove / replace customer assignments of a user
- remove a user

Each mutation commits its own transaction first and only then publishes
a ChangeEvent through AccessEngine.enqueue_invalidation(). A failed
enqueue is logged and does not fail the mutation; an operator tenant
rebuild repairs any closure it left stale.

SECURITY: The service is bound to one tenant. Every referenced user and
customer must belong to it.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from customer_access.errors import (
    AccessEngineError,
    InvalidHierarchyError,
    TenantIsolationError,
)
from customer_access.hierarchy.invalidation import ChangeEvent
from customer_access.models.hierarchy import Customer, CustomerAssignment, ManagerEdge, User
from customer_access.services.access_engine import AccessEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignmentInput:
    """One desired customer assignment for set_customer_assignments()."""
    customer_id: str
    role: Optional[str] = None


class HierarchyMutationService:
    """Tenant-bound mutations of user_managers and user_customers."""

    def __init__(
        self,
        db_session: Session,
        tenant_id: str,
        engine: Optional[AccessEngine] = None,
    ):
        """
        Args:
            db_session: Database session
            tenant_id: Tenant identifier (from the authenticated session)
            engine: Access engine receiving invalidations

        Raises:
            ValueError: If tenant_id is empty or None
        """
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")

        self.db = db_session
        self.tenant_id = tenant_id
        self.engine = engine or AccessEngine(db_session)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _require_same_tenant(self, model, entity_ids: Iterable[str], label: str) -> None:
        """Every id must exist and belong to this tenant."""
        wanted = set(entity_ids)
        if not wanted:
            return
        rows = self.db.execute(
            select(model.id, model.tenant_id).where(model.id.in_(wanted))
        ).all()
        found = {row.id: row.tenant_id for row in rows}

        for entity_id in sorted(wanted):
            tenant = found.get(entity_id)
            if tenant is None:
                raise InvalidHierarchyError(f"Unknown {label} {entity_id}", tenant_id=self.tenant_id)
            if tenant != self.tenant_id:
                logger.error(
                    "Cross-tenant reference rejected",
                    extra={
                        "tenant_id": self.tenant_id,
                        "offending_tenant_id": tenant,
                        "entity_type": label,
                        "entity_id": entity_id,
                    },
                )
                raise TenantIsolationError(
                    f"{label.capitalize()} {entity_id} belongs to another tenant",
                    tenant_id=self.tenant_id,
                    offending_tenant_id=tenant,
                )

    def _require_users(self, *user_ids: str) -> None:
        self._require_same_tenant(User, user_ids, "user")

    def _require_customers(self, customer_ids: Iterable[str]) -> None:
        self._require_same_tenant(Customer, customer_ids, "customer")

    # ------------------------------------------------------------------
    # Transaction helpers
    # ------------------------------------------------------------------

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Hierarchy mutation failed",
                extra={"tenant_id": self.tenant_id, "operation": operation, "error": str(e)},
            )
            raise

    def _publish(self, change: ChangeEvent) -> None:
        """Enqueue invalidation after commit. Failures are logged, not raised."""
        try:
            self.engine.enqueue_invalidation(self.tenant_id, change)
        except (AccessEngineError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.error(
                "Failed to enqueue closure rebuild after mutation",
                extra={
                    "tenant_id": self.tenant_id,
                    "change_kind": change.kind.value,
                    "error": str(e),
                },
            )

    def _manager_ids_of(self, report_id: str) -> List[str]:
        return list(
            self.db.execute(
                select(ManagerEdge.manager_id).where(
                    ManagerEdge.tenant_id == self.tenant_id,
                    ManagerEdge.report_id == report_id,
                )
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Manager relationships
    # ------------------------------------------------------------------

    def add_manager(self, report_id: str, manager_id: str) -> bool:
        """
        Make report_id report to manager_id.

        Returns:
            True if the edge was created, False if it already existed

        Raises:
            InvalidHierarchyError: Self-management or unknown user
            TenantIsolationError: Either user belongs to another tenant
        """
        if report_id == manager_id:
            raise InvalidHierarchyError("A user cannot manage themselves", tenant_id=self.tenant_id)
        self._require_users(report_id, manager_id)

        existing = self.db.get(ManagerEdge, (report_id, manager_id))
        if existing is not None:
            return False

        self.db.add(ManagerEdge(tenant_id=self.tenant_id, report_id=report_id, manager_id=manager_id))
        self._commit("add_manager")
        logger.info(
            "Added manager relationship",
            extra={"tenant_id": self.tenant_id, "report_id": report_id, "manager_id": manager_id},
        )
        self._publish(ChangeEvent.manager_added(self.tenant_id, report_id, manager_id))
        return True

    def remove_manager(self, report_id: str, manager_id: str) -> bool:
        """Returns False if the edge did not exist."""
        result = self.db.execute(
            delete(ManagerEdge).where(
                ManagerEdge.tenant_id == self.tenant_id,
                ManagerEdge.report_id == report_id,
                ManagerEdge.manager_id == manager_id,
            )
        )
        if not result.rowcount:
            self.db.rollback()
            return False

        self._commit("remove_manager")
        logger.info(
            "Removed manager relationship",
            extra={"tenant_id": self.tenant_id, "report_id": report_id, "manager_id": manager_id},
        )
        self._publish(ChangeEvent.manager_removed(self.tenant_id, report_id, manager_id))
        return True

    def set_managers(self, report_id: str, manager_ids: Iterable[str]) -> bool:
        """
        Replace every manager of report_id.

        Returns:
            True if the manager set changed
        """
        new_ids = list(dict.fromkeys(manager_ids))
        if report_id in new_ids:
            raise InvalidHierarchyError("A user cannot manage themselves", tenant_id=self.tenant_id)
        self._require_users(report_id, *new_ids)

        previous_ids = self._manager_ids_of(report_id)
        if set(previous_ids) == set(new_ids):
            return False

        self.db.execute(
            delete(ManagerEdge).where(
                ManagerEdge.tenant_id == self.tenant_id,
                ManagerEdge.report_id == report_id,
            )
        )
        for manager_id in new_ids:
            self.db.add(ManagerEdge(tenant_id=self.tenant_id, report_id=report_id, manager_id=manager_id))
        self._commit("set_managers")

        logger.info(
            "Set managers for user",
            extra={"tenant_id": self.tenant_id, "report_id": report_id, "manager_count": len(new_ids)},
        )
        self._publish(ChangeEvent.managers_replaced(self.tenant_id, report_id, new_ids, previous_ids))
        return True

    # ------------------------------------------------------------------
    # Customer assignments
    # ------------------------------------------------------------------

    def add_customer_assignment(self, user_id: str, customer_id: str, role: Optional[str] = None) -> bool:
        """
        Assign customer_id directly to user_id.

        Returns:
            True if the assignment was created. An existing assignment only
            has its role updated, which does not affect access.
        """
        self._require_users(user_id)
        self._require_customers([customer_id])

        existing = self.db.get(CustomerAssignment, (user_id, customer_id))
        if existing is not None:
            if role is not None and existing.role != role:
                existing.role = role
                self._commit("update_assignment_role")
            return False

        self.db.add(
            CustomerAssignment(
                tenant_id=self.tenant_id,
                user_id=user_id,
                customer_id=customer_id,
                role=role,
            )
        )
        self._commit("add_customer_assignment")
        logger.info(
            "Added customer assignment",
            extra={"tenant_id": self.tenant_id, "user_id": user_id, "customer_id": customer_id},
        )
        self._publish(ChangeEvent.assignment_added(self.tenant_id, user_id, customer_id))
        return True

    def remove_customer_assignment(self, user_id: str, customer_id: str) -> bool:
        result = self.db.execute(
            delete(CustomerAssignment).where(
                CustomerAssignment.tenant_id == self.tenant_id,
                CustomerAssignment.user_id == user_id,
                CustomerAssignment.customer_id == customer_id,
            )
        )
        if not result.rowcount:
            self.db.rollback()
            return False

        self._commit("remove_customer_assignment")
        logger.info(
            "Removed customer assignment",
            extra={"tenant_id": self.tenant_id, "user_id": user_id, "customer_id": customer_id},
        )
        self._publish(ChangeEvent.assignment_removed(self.tenant_id, user_id, customer_id))
        return True

    def set_customer_assignments(
        self,
        user_id: str,
        assignments: Iterable[Union[str, AssignmentInput]],
    ) -> bool:
        """
        Replace every direct assignment of user_id.

        Args:
            user_id: User whose assignments are replaced
            assignments: Customer ids, or AssignmentInput for a role label

        Returns:
            True if the set of assigned customers changed
        """
        desired: Dict[str, Optional[str]] = {}
        for item in assignments:
            if isinstance(item, AssignmentInput):
                desired[item.customer_id] = item.role
            else:
                desired[item] = None

        self._require_users(user_id)
        self._require_customers(desired.keys())

        previous = set(
            self.db.execute(
                select(CustomerAssignment.customer_id).where(
                    CustomerAssignment.tenant_id == self.tenant_id,
                    CustomerAssignment.user_id == user_id,
                )
            ).scalars()
        )

        self.db.execute(
            delete(CustomerAssignment).where(
                CustomerAssignment.tenant_id == self.tenant_id,
                CustomerAssignment.user_id == user_id,
            )
        )
        for customer_id, role in desired.items():
            self.db.add(
                CustomerAssignment(
                    tenant_id=self.tenant_id,
                    user_id=user_id,
                    customer_id=customer_id,
                    role=role,
                )
            )
        self._commit("set_customer_assignments")

        changed = previous != set(desired)
        logger.info(
            "Set customer assignments for user",
            extra={
                "tenant_id": self.tenant_id,
                "user_id": user_id,
                "assignment_count": len(desired),
                "changed": changed,
            },
        )
        if changed:
            self._publish(ChangeEvent.assignments_replaced(self.tenant_id, user_id))
        return changed

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def remove_user(self, user_id: str) -> bool:
        """
        Delete a user with its edges and assignments.

        The user's own closure rows are cleared by the rebuild that the
        published event schedules; its former managers are rebuilt too.
        """
        user = self.db.get(User, user_id)
        if user is None:
            return False
        if user.tenant_id != self.tenant_id:
            raise TenantIsolationError(
                f"User {user_id} belongs to another tenant",
                tenant_id=self.tenant_id,
                offending_tenant_id=user.tenant_id,
            )

        previous_manager_ids = self._manager_ids_of(user_id)

        self.db.execute(
            delete(ManagerEdge).where(
                ManagerEdge.tenant_id == self.tenant_id,
                or_(ManagerEdge.report_id == user_id, ManagerEdge.manager_id == user_id),
            )
        )
        self.db.execute(
            delete(CustomerAssignment).where(
                CustomerAssignment.tenant_id == self.tenant_id,
                CustomerAssignment.user_id == user_id,
            )
        )
        self.db.delete(user)
        self._commit("remove_user")

        logger.info(
            "Removed user",
            extra={
                "tenant_id": self.tenant_id,
                "user_id": user_id,
                "former_manager_count": len(previous_manager_ids),
            },
        )
        self._publish(ChangeEvent.user_removed(self.tenant_id, user_id, previous_manager_ids))
        return True
