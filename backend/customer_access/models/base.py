"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- TenantScopedMixin: tenant_id for multi-tenant isolation
- generate_uuid: UUID generation for primary keys
- utcnow: timezone-aware "now" used by every lifecycle timestamp
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, func
from sqlalchemy.orm import declared_attr


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time in UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a datetime read back from the database to aware UTC.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so values
    loaded in tests come back naive even though they were written as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class TenantScopedMixin:
    """
    Mixin that adds tenant_id column for multi-tenant isolation.

    SECURITY: tenant_id is the hard isolation boundary. No row, and no
    derived closure row, may ever reference entities of another tenant.
    """

    @declared_attr
    def tenant_id(cls):
        return Column(
            String(255),
            nullable=False,
            index=True,
            comment="Tenant identifier. Hard isolation boundary."
        )
