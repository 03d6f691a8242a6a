"""
Hierarchy and assignment store tables.

These are the source-of-truth tables the access engine reads from:
- users: tenant members
- customers: customer accounts (the customer-bearing entity)
- user_managers: "report reports to manager" edges (many-to-many)
- user_customers: direct customer assignments (many-to-many)

Changes to user_managers / user_customers make closures stale; the
mutation paths publish invalidations after their transaction commits.
"""

from sqlalchemy import (
    Column,
    String,
    Boolean,
    ForeignKey,
    Index,
    CheckConstraint,
    UniqueConstraint,
)

from customer_access.db_base import Base
from customer_access.models.base import (
    TimestampMixin,
    TenantScopedMixin,
    generate_uuid,
)


class User(Base, TimestampMixin, TenantScopedMixin):
    """A tenant member. Only read by the access engine."""

    __tablename__ = "users"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )
    email = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, tenant_id={self.tenant_id}, email={self.email})>"


class Customer(Base, TimestampMixin, TenantScopedMixin):
    """A customer account. Every customer-scoped row hangs off one of these."""

    __tablename__ = "customers"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )
    name = Column(String(255), nullable=False)

    __table_args__ = (
        Index("ix_customers_tenant_name", "tenant_id", "name"),
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, tenant_id={self.tenant_id}, name={self.name})>"


class ManagerEdge(Base, TimestampMixin, TenantScopedMixin):
    """
    Directed edge: report_id reports to manager_id.

    A report may have several managers (matrix organization), so the
    hierarchy is a general directed graph. Self-loops are rejected by a
    check constraint; longer cycles cannot be ruled out by the schema and
    every reader must tolerate them.
    """

    __tablename__ = "user_managers"

    report_id = Column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
        comment="User who reports to manager_id",
    )
    manager_id = Column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
        comment="Manager of report_id",
    )

    __table_args__ = (
        CheckConstraint("report_id != manager_id", name="chk_no_self_manager"),
        Index("ix_user_managers_tenant_manager", "tenant_id", "manager_id"),
        Index("ix_user_managers_tenant_report", "tenant_id", "report_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ManagerEdge(tenant_id={self.tenant_id}, "
            f"report_id={self.report_id}, manager_id={self.manager_id})>"
        )


class CustomerAssignment(Base, TimestampMixin, TenantScopedMixin):
    """Direct grant of a customer to a user, independent of hierarchy."""

    __tablename__ = "user_customers"

    user_id = Column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    customer_id = Column(
        String(255),
        ForeignKey("customers.id", ondelete="CASCADE"),
        primary_key=True,
    )
    role = Column(
        String(100),
        nullable=True,
        comment="Free-form label, e.g. account_manager. Not used for access decisions.",
    )

    __table_args__ = (
        Index("ix_user_customers_tenant_user", "tenant_id", "user_id"),
        Index("ix_user_customers_tenant_customer", "tenant_id", "customer_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<CustomerAssignment(tenant_id={self.tenant_id}, "
            f"user_id={self.user_id}, customer_id={self.customer_id})>"
        )
