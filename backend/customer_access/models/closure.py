"""
Closure table models.

closure_entries is the materialized view every access query reads:
one row per (tenant, user, customer) the user can see. It is written
exclusively by the rebuild worker's per-user swap.

closure_states keeps one row per (tenant, user) describing the closure
currently in closure_entries (version, when it was rebuilt, which graph
snapshot it reflects). It is written in the same transaction as the swap
and is what makes staleness observable.

No foreign keys point from these tables to users/customers: closure rows
must only disappear through a swap, never through a cascade.
"""

from sqlalchemy import Column, String, Integer, DateTime, Index

from customer_access.db_base import Base
from customer_access.models.base import utcnow


class ClosureEntry(Base):
    """A single customer visible to a user through the hierarchy closure."""

    __tablename__ = "closure_entries"

    tenant_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), primary_key=True)
    customer_id = Column(String(255), primary_key=True)
    rebuilt_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the swap that wrote this row committed",
    )

    __table_args__ = (
        # Filter path: customer_id IN (... WHERE tenant_id = ? AND user_id = ?)
        Index("ix_closure_entries_tenant_user", "tenant_id", "user_id"),
        # Reverse lookups: who can see this customer
        Index("ix_closure_entries_tenant_customer", "tenant_id", "customer_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ClosureEntry(tenant_id={self.tenant_id}, user_id={self.user_id}, "
            f"customer_id={self.customer_id})>"
        )


class ClosureState(Base):
    """Version and freshness metadata for one user's closure."""

    __tablename__ = "closure_states"

    tenant_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), primary_key=True)
    version = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Incremented on every committed swap",
    )
    entry_count = Column(Integer, nullable=False, default=0)
    rebuilt_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the last swap committed",
    )
    snapshot_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the graph used for the current closure was read",
    )

    def __repr__(self) -> str:
        return (
            f"<ClosureState(tenant_id={self.tenant_id}, user_id={self.user_id}, "
            f"version={self.version}, entry_count={self.entry_count})>"
        )
